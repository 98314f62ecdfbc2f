from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UNKNOWN_SERVICE = "Unknown Service"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServiceRevenue(_CamelModel):
    service_id: Optional[str] = None
    name: str = UNKNOWN_SERVICE
    revenue: Decimal = Decimal("0")
    count: int = 0
    avg_revenue: Decimal = Decimal("0")


class RevenueSummary(_CamelModel):
    user_id: str
    current_revenue: Decimal = Decimal("0")
    previous_revenue: Decimal = Decimal("0")
    revenue_change_pct: float = 0.0
    per_service_breakdown: list[ServiceRevenue] = Field(default_factory=list)
    provider_income: Decimal = Decimal("0")
    client_spending: Decimal = Decimal("0")
    total_transaction_count: int = 0
    used_fallback: bool = False


class ActivityLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class HeatmapDay(_CamelModel):
    day: date
    transactions: int = 0
    notifications: int = 0
    total: int = 0
    level: ActivityLevel = ActivityLevel.NONE
