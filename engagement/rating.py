"""
Post-payment rating prompt.

Confirming a payment queues one ``payment_confirmed_rating`` notification for
the client. The client's view watches for the single most recent unread
prompt, shows it, and consumes it; consumption flips ``read`` exactly once so
the same transaction never prompts twice.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import AlreadyProcessedError, AuthorizationError, NotFoundError, ValidationError
from .models import (
    ACCEPTED_TRANSACTION_STATUSES,
    Notification,
    NotificationType,
    Review,
    Transaction,
    utcnow,
)
from .store import Increment, InMemoryStore, PreconditionFailedError, Snapshot, Subscription, get_path, new_id

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"
REVIEWS = "reviews"
TRANSACTIONS = "transactions"
LISTINGS = "listings"

RATING_PROMPT = NotificationType.PAYMENT_CONFIRMED_RATING.value


class RatingTrigger:
    def __init__(self, store: InMemoryStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow

    def _prompt_query(self, user_id: str) -> dict:
        return {
            "userId": user_id,
            "type": RATING_PROMPT,
            "read": False,
            "order_by": "createdAt",
            "descending": True,
            "limit": 1,
        }

    def schedule(self, client_id: str, provider_id: str, service_id: Optional[str],
                 transaction_id: str, provider_name: Optional[str] = None) -> Notification:
        existing = self.store.query(
            NOTIFICATIONS,
            userId=client_id,
            type=RATING_PROMPT,
            where=lambda doc: get_path(doc, "payload.transactionId") == transaction_id,
            limit=1,
        )
        if existing:
            return Notification.model_validate(existing[0])

        notification = Notification(
            id=new_id(),
            user_id=client_id,
            type=RATING_PROMPT,
            message="Your payment was confirmed. How was the service?",
            payload={
                "serviceId": service_id,
                "providerId": provider_id,
                "providerName": provider_name or "Service Provider",
                "transactionId": transaction_id,
            },
            created_at=self.clock(),
        )
        self.store.add(NOTIFICATIONS, notification.to_document())
        logger.info("Rating prompt %s queued for %s (transaction %s)", notification.id, client_id, transaction_id)
        return notification

    def pending_prompt(self, user_id: str) -> Optional[Notification]:
        docs = self.store.query(NOTIFICATIONS, **self._prompt_query(user_id))
        return Notification.model_validate(docs[0]) if docs else None

    def watch(self, user_id: str, on_prompt: Callable[[Optional[Notification]], None]) -> Subscription:
        def handle(snapshot: Snapshot) -> None:
            documents = snapshot.documents
            on_prompt(Notification.model_validate(documents[0]) if documents else None)

        return self.store.subscribe(NOTIFICATIONS, handle, **self._prompt_query(user_id))

    def consume(self, user_id: str, notification_id: str) -> Notification:
        doc = self.store.get(NOTIFICATIONS, notification_id)
        if not doc:
            raise NotFoundError(f"Notification {notification_id} not found")
        if doc.get("userId") != user_id:
            raise AuthorizationError(f"Notification {notification_id} belongs to another user")
        if doc.get("read"):
            raise AlreadyProcessedError(f"Notification {notification_id} was already consumed")

        try:
            with self.store.transaction() as txn:
                txn.require(NOTIFICATIONS, notification_id, {"read": False})
                txn.update(NOTIFICATIONS, notification_id, {"read": True, "readAt": self.clock()})
        except PreconditionFailedError:
            raise AlreadyProcessedError(f"Notification {notification_id} was already consumed")

        return Notification.model_validate(self.store.get(NOTIFICATIONS, notification_id))

    def submit_review(self, rater_id: str, transaction_id: str, rating: int, comment: str = "") -> Review:
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        doc = self.store.get(TRANSACTIONS, transaction_id)
        if not doc:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        transaction = Transaction.model_validate(doc)
        if transaction.client_id != rater_id:
            raise AuthorizationError("Only the paying client can rate this transaction")
        if transaction.status not in ACCEPTED_TRANSACTION_STATUSES:
            raise ValidationError(f"Cannot rate a {transaction.status.value} transaction")

        review = Review(
            id=f"{transaction_id}_{rater_id}",
            rater_id=rater_id,
            target_id=transaction.provider_id,
            service_id=transaction.service_id,
            rating=rating,
            transaction_id=transaction_id,
            comment=comment,
            created_at=self.clock(),
        )
        listing_exists = bool(transaction.service_id and self.store.get(LISTINGS, transaction.service_id))

        try:
            with self.store.transaction() as txn:
                txn.require_absent(REVIEWS, review.id)
                txn.set(REVIEWS, review.id, review.to_document())
                if listing_exists:
                    txn.update(LISTINGS, transaction.service_id, {
                        "ratingTotal": Increment(rating),
                        "reviewCount": Increment(1),
                    })
        except PreconditionFailedError:
            raise AlreadyProcessedError(f"Transaction {transaction_id} was already rated")

        return review
