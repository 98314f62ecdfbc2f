from .candidates import Candidate, CandidateKind, MessagePayment, NotificationPayment, TransactionCandidate
from .engine import RevenueReconciler
from .heatmap import calendar_heatmap
from .models import ActivityLevel, HeatmapDay, RevenueSummary, ServiceRevenue
from .normalize import parse_date

__all__ = [
    "ActivityLevel",
    "Candidate",
    "CandidateKind",
    "HeatmapDay",
    "MessagePayment",
    "NotificationPayment",
    "RevenueReconciler",
    "RevenueSummary",
    "ServiceRevenue",
    "TransactionCandidate",
    "calendar_heatmap",
    "parse_date",
]
