"""
Service engagement between clients and providers.

This package provides:
- Per-service conversation threads grouped into one inbox entry per person
- The engagement lifecycle: selected → reserved → payment submitted → confirmed
- Payment proof intake through the upload collaborator
- Post-payment rating prompts and reviews
"""

from .errors import EngagementError
from .grouper import ConversationFeed, group_conversations
from .models import Conversation, Engagement, Listing, Message, Notification, Transaction
from .payments import PaymentProofSubmission
from .rating import RatingTrigger
from .service import EngagementService
from .state_machine import EngagementState, VisibilityChoice
from .store import InMemoryStore

__all__ = [
    "Conversation",
    "ConversationFeed",
    "Engagement",
    "EngagementError",
    "EngagementService",
    "EngagementState",
    "InMemoryStore",
    "Listing",
    "Message",
    "Notification",
    "PaymentProofSubmission",
    "RatingTrigger",
    "Transaction",
    "VisibilityChoice",
    "group_conversations",
]
