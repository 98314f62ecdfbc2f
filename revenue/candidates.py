"""
Revenue candidates.

Each revenue-bearing source becomes one variant of a tagged union. The
variants share ``id``, ``amount``, ``parsed_date``, ``service_id`` and
``conversation_id``; each knows which users it involves, who received the
money and who paid it.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from engagement.models import ACCEPTED_TRANSACTION_STATUSES
from engagement.money import extract_amount, to_amount

from .normalize import first_present, parse_date


class CandidateKind(str, Enum):
    TRANSACTION = "transaction"
    NOTIFICATION = "notification"
    MESSAGE = "message_payment"


@dataclass(frozen=True)
class TransactionCandidate:
    id: str
    amount: Decimal
    parsed_date: datetime
    provider_id: Optional[str]
    client_id: Optional[str]
    status: str
    service_id: Optional[str] = None
    conversation_id: Optional[str] = None
    proof_ref: Optional[str] = None
    kind: CandidateKind = CandidateKind.TRANSACTION

    def involves(self, user_id: str) -> bool:
        return user_id in (self.provider_id, self.client_id)

    def received_by(self, user_id: str) -> bool:
        return self.provider_id == user_id

    def paid_by(self, user_id: str) -> bool:
        return self.client_id == user_id

    @property
    def accepted(self) -> bool:
        return self.status in ACCEPTED_TRANSACTION_STATUSES


@dataclass(frozen=True)
class NotificationPayment:
    id: str
    amount: Decimal
    parsed_date: datetime
    user_id: Optional[str]
    type: str
    service_id: Optional[str] = None
    conversation_id: Optional[str] = None
    proof_ref: Optional[str] = None
    kind: CandidateKind = CandidateKind.NOTIFICATION

    def involves(self, user_id: str) -> bool:
        return self.user_id == user_id

    # payment notifications are addressed to the party being paid
    def received_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def paid_by(self, user_id: str) -> bool:
        return False


@dataclass(frozen=True)
class MessagePayment:
    id: str
    amount: Decimal
    parsed_date: datetime
    sender_id: Optional[str]
    receiver_id: Optional[str]
    service_id: Optional[str] = None
    conversation_id: Optional[str] = None
    proof_ref: Optional[str] = None
    kind: CandidateKind = CandidateKind.MESSAGE

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def received_by(self, user_id: str) -> bool:
        return self.receiver_id == user_id

    def paid_by(self, user_id: str) -> bool:
        return self.sender_id == user_id


Candidate = Union[TransactionCandidate, NotificationPayment, MessagePayment]


def _text(value) -> str:
    return str(getattr(value, "value", value) or "")


def _amount(value) -> Decimal:
    amount = to_amount(value)
    return amount if amount is not None and amount > 0 else Decimal("0")


def normalize_transaction(doc: dict, now: Optional[datetime] = None) -> TransactionCandidate:
    return TransactionCandidate(
        id=doc["id"],
        amount=_amount(doc.get("amount")),
        parsed_date=parse_date(first_present(doc, "createdAt", "timestamp", "confirmedAt"), now),
        provider_id=doc.get("providerId"),
        client_id=doc.get("clientId"),
        status=_text(doc.get("status")),
        service_id=doc.get("serviceId"),
        conversation_id=doc.get("conversationId"),
        proof_ref=doc.get("paymentProofRef"),
    )


def normalize_notification(doc: dict, now: Optional[datetime] = None) -> NotificationPayment:
    payload = doc.get("payload") or doc.get("data") or {}
    return NotificationPayment(
        id=doc["id"],
        amount=_amount(payload.get("amount")),
        parsed_date=parse_date(first_present(doc, "createdAt", "timestamp"), now),
        user_id=doc.get("userId"),
        type=_text(doc.get("type")),
        service_id=payload.get("serviceId"),
        conversation_id=payload.get("conversationId"),
        proof_ref=payload.get("paymentProof"),
    )


def normalize_message(doc: dict, now: Optional[datetime] = None) -> MessagePayment:
    amount = to_amount(doc.get("paymentAmount"))
    if amount is None:
        amount = extract_amount(doc.get("text"))
    return MessagePayment(
        id=doc["id"],
        amount=amount if amount is not None and amount > 0 else Decimal("0"),
        parsed_date=parse_date(first_present(doc, "timestamp", "createdAt"), now),
        sender_id=doc.get("senderId"),
        receiver_id=doc.get("receiverId"),
        service_id=doc.get("serviceId") or None,
        conversation_id=doc.get("conversationId"),
        proof_ref=doc.get("paymentProof"),
    )
