from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .state_machine import EngagementState, VisibilityChoice


class Role(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class MessageKind(str, Enum):
    PLAIN = "plain"
    SYSTEM = "system"
    PAYMENT_PROOF = "paymentProof"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    SERVICE_REQUEST = "service_request"
    SERVICE_ACCEPTED = "service_accepted"
    SERVICE_DECLINED = "service_declined"
    PAYMENT_PROOF = "payment_proof"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT = "payment"
    PAYMENT_CONFIRMED_RATING = "payment_confirmed_rating"


PAYMENT_NOTIFICATION_TYPES = (
    NotificationType.PAYMENT_PROOF.value,
    NotificationType.PAYMENT_CONFIRMATION.value,
    NotificationType.PAYMENT.value,
)

ACCEPTED_TRANSACTION_STATUSES = (
    TransactionStatus.CONFIRMED.value,
    TransactionStatus.COMPLETED.value,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """Base for stored documents: snake_case in Python, camelCase in the store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="python")


class Participant(Document):
    id: str
    role: Role


class Listing(Document):
    id: str
    provider_id: str
    title: str = ""
    price: Decimal = Decimal("0")
    is_reserved: bool = False
    reserved_by: Optional[str] = None
    active: bool = True
    total_completions: int = 0
    rating_total: int = 0
    review_count: int = 0

    @model_validator(mode="after")
    def _reservation_has_holder(self) -> "Listing":
        if self.is_reserved and not self.reserved_by:
            raise ValueError(f"Listing {self.id} is reserved without reservedBy")
        return self

    def is_available_to(self, client_id: str) -> bool:
        return self.active and (not self.is_reserved or self.reserved_by == client_id)


class Thread(Document):
    id: str
    participants: list[str]
    service_id: Optional[str] = None
    service_title: Optional[str] = None
    last_message: str = ""
    last_message_time: Optional[datetime] = None
    last_sender_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def other_participant(self, user_id: str) -> Optional[str]:
        return next((p for p in self.participants if p != user_id), None)


class RelatedThread(Document):
    id: str
    service_id: Optional[str] = None
    service_title: Optional[str] = None
    last_message_time: Optional[datetime] = None


class Conversation(Document):
    id: str
    other_participant_id: str
    primary_thread: Thread
    related_threads: list[RelatedThread] = Field(default_factory=list)

    @property
    def thread_ids(self) -> list[str]:
        return [self.primary_thread.id] + [t.id for t in self.related_threads]


class Message(Document):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str = ""
    timestamp: datetime
    kind: MessageKind = MessageKind.PLAIN
    payment_proof: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_confirmed: bool = False
    service_id: Optional[str] = None
    engagement_id: Optional[str] = None
    read: bool = False


class Transaction(Document):
    id: str
    provider_id: str
    client_id: str
    service_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    status: TransactionStatus = TransactionStatus.PENDING
    payment_proof_ref: Optional[str] = None
    conversation_id: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None

    def can_confirm(self) -> bool:
        return self.status == TransactionStatus.PENDING


class Notification(Document):
    id: str
    user_id: str
    type: str
    read: bool = False
    message: str = ""
    payload: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class Review(Document):
    id: str
    rater_id: str
    target_id: str
    service_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    transaction_id: str
    comment: str = ""
    created_at: datetime


class Engagement(Document):
    id: str
    listing_id: str
    client_id: str
    provider_id: str
    conversation_id: str
    state: EngagementState = EngagementState.SELECTED
    history: list[EngagementState] = Field(default_factory=list)
    proof_message_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    def participant(self, user_id: str) -> Optional[Participant]:
        if user_id == self.client_id:
            return Participant(id=user_id, role=Role.CLIENT)
        if user_id == self.provider_id:
            return Participant(id=user_id, role=Role.PROVIDER)
        return None


class ProofArtifact(BaseModel):
    url: str
    size: int = Field(..., ge=0)
    content_type: str


# Request / response bodies

class ConfirmPaymentRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, ge=0, description="Amount the provider actually received")


class VisibilityRequest(BaseModel):
    choice: VisibilityChoice


class ReviewRequest(BaseModel):
    transaction_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(default="", max_length=1000)

    model_config = ConfigDict(json_schema_extra={
        "example": {"transaction_id": "3f2a9c", "rating": 5, "comment": "Quick and friendly"}
    })


class EngagementResponse(BaseModel):
    engagement: Engagement
    message: str


class PaymentResponse(BaseModel):
    payment_message: Message
    transaction: Optional[Transaction] = None
    message: str
