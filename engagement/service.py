import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .config import Settings, get_settings
from .errors import (
    AlreadyProcessedError,
    AuthorizationError,
    InvalidStateTransitionError,
    ListingUnavailableError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from .grouper import THREADS, group_conversations, thread_id
from .models import (
    Conversation,
    Engagement,
    EngagementResponse,
    Listing,
    Message,
    MessageKind,
    Notification,
    NotificationType,
    PaymentResponse,
    ProofArtifact,
    Role,
    Thread,
    Transaction,
    TransactionStatus,
    utcnow,
)
from .rating import NOTIFICATIONS, RatingTrigger
from .state_machine import (
    CONFIRMED_STATES,
    PAYABLE_STATES,
    VISIBILITY_OUTCOMES,
    EngagementState,
    VisibilityChoice,
    ensure_transition,
    path,
)
from .store import Increment, InMemoryStore, PreconditionFailedError, StoreTransaction, new_id

logger = logging.getLogger(__name__)

LISTINGS = "listings"
ENGAGEMENTS = "engagements"
SELECTIONS = "selections"
MESSAGES = "messages"
TRANSACTIONS = "transactions"
PROVIDERS = "providers"


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _checked_amount(amount: Optional[Decimal]) -> Optional[Decimal]:
    if amount is not None and (not amount.is_finite() or amount < 0):
        raise ValidationError(f"Invalid payment amount: {amount}")
    return amount


class EngagementService:
    def __init__(self, store: Optional[InMemoryStore] = None, rating: Optional[RatingTrigger] = None,
                 settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store or InMemoryStore()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.rating = rating or RatingTrigger(self.store, clock=self.clock)

    # Reads

    def get_listing(self, listing_id: str) -> Listing:
        doc = self.store.get(LISTINGS, listing_id)
        if not doc:
            raise NotFoundError(f"Listing {listing_id} not found")
        return Listing.model_validate(doc)

    def get_engagement(self, engagement_id: str) -> Engagement:
        doc = self.store.get(ENGAGEMENTS, engagement_id)
        if not doc:
            raise NotFoundError(f"Engagement {engagement_id} not found")
        return Engagement.model_validate(doc)

    def get_message(self, message_id: str) -> Message:
        doc = self.store.get(MESSAGES, message_id)
        if not doc:
            raise NotFoundError(f"Message {message_id} not found")
        return Message.model_validate(doc)

    def get_transaction(self, transaction_id: str) -> Transaction:
        doc = self.store.get(TRANSACTIONS, transaction_id)
        if not doc:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.model_validate(doc)

    def list_messages(self, conversation_id: str) -> list[Message]:
        docs = self.store.query(MESSAGES, conversationId=conversation_id, order_by="timestamp")
        return [Message.model_validate(d) for d in docs]

    def list_conversations(self, user_id: str) -> list[Conversation]:
        threads = self.store.query(THREADS, where=lambda doc: user_id in doc.get("participants", []))
        return group_conversations(user_id, threads)

    def provider_stats(self, provider_id: str) -> dict:
        doc = self.store.get(PROVIDERS, provider_id) or {}
        stats = doc.get("stats", {})
        return {
            "totalRevenue": stats.get("totalRevenue", Decimal("0")),
            "successfulTransactions": stats.get("successfulTransactions", 0),
        }

    def open_engagement(self, client_id: str, listing_id: str) -> Optional[Engagement]:
        marker = self.store.get(SELECTIONS, f"{listing_id}_{client_id}")
        if not marker or not marker.get("engagementId"):
            return None
        return self.get_engagement(marker["engagementId"])

    def payable_engagements(self, client_id: str, provider_id: str) -> list[Engagement]:
        docs = self.store.query(
            ENGAGEMENTS,
            clientId=client_id,
            providerId=provider_id,
            where=lambda doc: doc.get("state") in PAYABLE_STATES,
            order_by="createdAt",
        )
        return [Engagement.model_validate(d) for d in docs]

    # Transitions

    def select_listing(self, client_id: str, listing_id: str) -> EngagementResponse:
        listing = self.get_listing(listing_id)
        if listing.provider_id == client_id:
            raise AuthorizationError("Providers cannot engage their own listing")
        if not listing.is_available_to(client_id):
            raise ListingUnavailableError(f"Listing {listing_id} is unavailable")

        existing = self.open_engagement(client_id, listing_id)
        if existing:
            return EngagementResponse(engagement=existing, message="Engagement already open (idempotent return)")

        now = self.clock()
        engagement = Engagement(
            id=new_id(),
            listing_id=listing.id,
            client_id=client_id,
            provider_id=listing.provider_id,
            conversation_id=thread_id(client_id, listing.provider_id, listing.id),
            state=EngagementState.SELECTED,
            history=[EngagementState.BROWSING] + path(EngagementState.BROWSING, EngagementState.SELECTED),
            created_at=now,
            updated_at=now,
        )

        try:
            with self.store.transaction() as txn:
                self._claim_selection(txn, listing.id, client_id, engagement.id)
                txn.set(ENGAGEMENTS, engagement.id, engagement.to_document())
                self._stage_message(
                    txn, listing, client_id,
                    sender_id=client_id,
                    receiver_id=listing.provider_id,
                    text=f'Hi! I would like to book "{listing.title}" for {self._money(listing.price)}.',
                    engagement_id=engagement.id,
                )
        except PreconditionFailedError:
            existing = self.open_engagement(client_id, listing_id)
            if existing:
                return EngagementResponse(engagement=existing, message="Engagement already open (idempotent return)")
            raise

        self._notify(listing.provider_id, NotificationType.SERVICE_REQUEST,
                     f'New request for "{listing.title}"', {
                         "serviceId": listing.id,
                         "engagementId": engagement.id,
                         "clientId": client_id,
                         "conversationId": engagement.conversation_id,
                     })
        logger.info("Client %s selected listing %s (engagement %s)", client_id, listing.id, engagement.id)
        return EngagementResponse(engagement=engagement, message="Listing selected")

    def accept(self, provider_id: str, engagement_id: str) -> EngagementResponse:
        engagement, listing = self._owned_engagement(provider_id, engagement_id)
        if engagement.state == EngagementState.RESERVED:
            return EngagementResponse(engagement=engagement, message="Engagement already accepted (idempotent return)")
        visited = path(engagement.state, EngagementState.ACCEPTED, EngagementState.RESERVED)

        now = self.clock()
        try:
            with self.store.transaction() as txn:
                # compare-and-set: only one client can take the reservation
                txn.require(LISTINGS, listing.id, {"isReserved": False, "active": True})
                txn.require(ENGAGEMENTS, engagement.id, {"state": EngagementState.SELECTED})
                txn.update(LISTINGS, listing.id, {"isReserved": True, "reservedBy": engagement.client_id})
                txn.update(ENGAGEMENTS, engagement.id, {
                    "state": EngagementState.RESERVED,
                    "history": engagement.history + visited,
                    "updatedAt": now,
                })
                self._stage_message(
                    txn, listing, engagement.client_id,
                    sender_id=provider_id,
                    receiver_id=engagement.client_id,
                    text=f'Your request for "{listing.title}" was accepted. Please proceed to payment '
                         f"of {self._money(listing.price)} and upload your proof of payment.",
                    engagement_id=engagement.id,
                )
        except PreconditionFailedError:
            current = self.get_engagement(engagement_id)
            if current.state == EngagementState.RESERVED:
                return EngagementResponse(engagement=current, message="Engagement already accepted (idempotent return)")
            raise ListingUnavailableError(f"Listing {listing.id} is unavailable")

        self._notify(engagement.client_id, NotificationType.SERVICE_ACCEPTED,
                     f'"{listing.title}" was accepted. Proceed to payment.', {
                         "serviceId": listing.id,
                         "engagementId": engagement.id,
                         "providerId": provider_id,
                         "conversationId": engagement.conversation_id,
                     })
        logger.info("Provider %s accepted engagement %s; listing %s reserved for %s",
                    provider_id, engagement.id, listing.id, engagement.client_id)
        return EngagementResponse(engagement=self.get_engagement(engagement_id), message="Engagement accepted")

    def decline(self, provider_id: str, engagement_id: str) -> EngagementResponse:
        engagement, listing = self._owned_engagement(provider_id, engagement_id)
        if engagement.state == EngagementState.DECLINED:
            return EngagementResponse(engagement=engagement, message="Engagement already declined (idempotent return)")
        visited = path(engagement.state, EngagementState.DECLINED)

        try:
            with self.store.transaction() as txn:
                txn.require(ENGAGEMENTS, engagement.id, {"state": EngagementState.SELECTED})
                txn.update(ENGAGEMENTS, engagement.id, {
                    "state": EngagementState.DECLINED,
                    "history": engagement.history + visited,
                    "updatedAt": self.clock(),
                })
                self._release_selection(txn, listing.id, engagement.client_id)
                self._stage_message(
                    txn, listing, engagement.client_id,
                    sender_id=provider_id,
                    receiver_id=engagement.client_id,
                    text=f'Sorry, I can\'t take your request for "{listing.title}" right now.',
                    engagement_id=engagement.id,
                )
        except PreconditionFailedError:
            current = self.get_engagement(engagement_id)
            if current.state == EngagementState.DECLINED:
                return EngagementResponse(engagement=current, message="Engagement already declined (idempotent return)")
            raise InvalidStateTransitionError(f"Cannot decline engagement in {current.state.value} state")

        self._notify(engagement.client_id, NotificationType.SERVICE_DECLINED,
                     f'Your request for "{listing.title}" was declined.', {
                         "serviceId": listing.id,
                         "engagementId": engagement.id,
                         "providerId": provider_id,
                     })
        logger.info("Provider %s declined engagement %s", provider_id, engagement.id)
        return EngagementResponse(engagement=self.get_engagement(engagement_id), message="Engagement declined")

    def validate_proof(self, size: int, content_type: Optional[str]) -> None:
        limit = self.settings.max_proof_bytes
        if size <= 0:
            raise ValidationError("No file provided")
        if size > limit:
            raise ValidationError(f"File too large. Maximum size is {limit // (1024 * 1024)}MB")
        if (content_type or "").lower() not in self.settings.allowed_proof_types:
            raise ValidationError("Invalid file type. Allowed types: JPEG, PNG, GIF, WebP")

    def submit_payment(self, client_id: str, engagement_id: str, proof: ProofArtifact,
                       amount: Optional[Decimal] = None, note: Optional[str] = None) -> PaymentResponse:
        self.validate_proof(proof.size, proof.content_type)
        amount = _checked_amount(amount)
        engagement = self.get_engagement(engagement_id)
        actor = engagement.participant(client_id)
        if actor is None or actor.role != Role.CLIENT:
            raise AuthorizationError("Only the engaging client can submit payment proof")
        listing = self.get_listing(engagement.listing_id)

        duplicate = self.store.query(
            MESSAGES, conversationId=engagement.conversation_id, paymentProof=proof.url, limit=1
        )
        if duplicate:
            message = Message.model_validate(duplicate[0])
            transaction = self.get_transaction(engagement.transaction_id) if engagement.transaction_id else None
            return PaymentResponse(payment_message=message, transaction=transaction,
                                   message="Payment proof already submitted (idempotent return)")

        if engagement.state not in PAYABLE_STATES:
            raise InvalidStateTransitionError(
                f"Cannot submit payment for engagement in {engagement.state.value} state"
            )
        visited = path(engagement.state, EngagementState.PAYMENT_SUBMITTED)

        now = self.clock()
        claimed = f" of {self._money(amount)}" if amount is not None else ""
        transaction = Transaction(
            id=new_id(),
            provider_id=listing.provider_id,
            client_id=client_id,
            service_id=listing.id,
            amount=amount if amount is not None else Decimal("0"),
            status=TransactionStatus.PENDING,
            payment_proof_ref=proof.url,
            conversation_id=engagement.conversation_id,
            created_at=now,
        )

        try:
            with self.store.transaction() as txn:
                txn.require(ENGAGEMENTS, engagement.id, {"state": engagement.state})
                message = self._stage_message(
                    txn, listing, client_id,
                    sender_id=client_id,
                    receiver_id=listing.provider_id,
                    text=note or f'I sent my payment{claimed} for "{listing.title}".',
                    kind=MessageKind.PAYMENT_PROOF,
                    payment_proof=proof.url,
                    payment_amount=amount,
                    engagement_id=engagement.id,
                )
                txn.set(TRANSACTIONS, transaction.id, transaction.to_document())
                txn.update(ENGAGEMENTS, engagement.id, {
                    "state": EngagementState.PAYMENT_SUBMITTED,
                    "history": engagement.history + visited,
                    "proofMessageId": message.id,
                    "transactionId": transaction.id,
                    "updatedAt": now,
                })
        except PreconditionFailedError:
            raise InvalidStateTransitionError(f"Engagement {engagement.id} changed while submitting payment")

        self._notify(listing.provider_id, NotificationType.PAYMENT_PROOF,
                     f'Payment proof received for "{listing.title}"', {
                         "amount": amount,
                         "serviceId": listing.id,
                         "conversationId": engagement.conversation_id,
                         "messageId": message.id,
                         "paymentProof": proof.url,
                         "clientId": client_id,
                     })
        logger.info("Client %s submitted payment proof %s for engagement %s", client_id, message.id, engagement.id)
        return PaymentResponse(payment_message=message, transaction=transaction, message="Payment proof submitted")

    def confirm_payment(self, provider_id: str, message_id: str,
                        amount: Optional[Decimal] = None) -> PaymentResponse:
        amount = _checked_amount(amount)
        raw = self.store.get(MESSAGES, message_id)
        if not raw:
            raise NotFoundError(f"Message {message_id} not found")
        message = Message.model_validate(raw)
        if message.kind != MessageKind.PAYMENT_PROOF or not message.payment_proof:
            raise ValidationError(f"Message {message_id} does not carry a payment proof")
        if message.receiver_id != provider_id:
            raise AuthorizationError("Only the receiving provider can confirm this payment")
        if not message.service_id:
            raise ValidationError(f"Message {message_id} has no service context")
        listing = self.get_listing(message.service_id)
        if listing.provider_id != provider_id:
            raise AuthorizationError("Only the listing owner can confirm this payment")
        if message.payment_confirmed:
            raise AlreadyProcessedError(f"Payment in message {message_id} was already confirmed")

        engagement = self._engagement_for(message)
        visited = []
        if engagement:
            visited = path(engagement.state, EngagementState.PAYMENT_CONFIRMED)

        pending = self.store.query(
            TRANSACTIONS, paymentProofRef=message.payment_proof, providerId=provider_id, limit=1
        )
        existing = Transaction.model_validate(pending[0]) if pending else None
        if existing and not existing.can_confirm():
            raise AlreadyProcessedError(f"Transaction {existing.id} was already confirmed")

        if amount is None:
            amount = message.payment_amount
        if amount is None and existing and existing.amount:
            amount = existing.amount
        if amount is None:
            amount = listing.price

        now = self.clock()
        transaction = Transaction(
            id=existing.id if existing else new_id(),
            provider_id=provider_id,
            client_id=message.sender_id,
            service_id=listing.id,
            amount=amount,
            status=TransactionStatus.CONFIRMED,
            payment_proof_ref=message.payment_proof,
            conversation_id=message.conversation_id,
            created_at=existing.created_at if existing else now,
            confirmed_at=now,
        )

        try:
            with self.store.transaction() as txn:
                txn.require(MESSAGES, message.id, {"paymentConfirmed": raw.get("paymentConfirmed")})
                txn.update(MESSAGES, message.id, {"paymentConfirmed": True})
                if existing:
                    txn.require(TRANSACTIONS, existing.id, {"status": TransactionStatus.PENDING})
                    txn.update(TRANSACTIONS, existing.id, {
                        "status": TransactionStatus.CONFIRMED,
                        "amount": amount,
                        "confirmedAt": now,
                    })
                else:
                    txn.set(TRANSACTIONS, transaction.id, transaction.to_document())
                txn.update(PROVIDERS, provider_id, {
                    "stats.totalRevenue": Increment(amount),
                    "stats.successfulTransactions": Increment(1),
                }, create=True)
                txn.update(LISTINGS, listing.id, {"totalCompletions": Increment(1)})
                if engagement:
                    txn.require(ENGAGEMENTS, engagement.id, {"state": engagement.state})
                    txn.update(ENGAGEMENTS, engagement.id, {
                        "state": EngagementState.PAYMENT_CONFIRMED,
                        "history": engagement.history + visited,
                        "transactionId": transaction.id,
                        "updatedAt": now,
                    })
                self._stage_message(
                    txn, listing, message.sender_id,
                    sender_id=provider_id,
                    receiver_id=message.sender_id,
                    text=f"Payment of {self._money(amount)} confirmed. Thank you!",
                    engagement_id=engagement.id if engagement else None,
                )
        except PreconditionFailedError:
            raise AlreadyProcessedError(f"Payment in message {message_id} was already confirmed")

        logger.info("Provider %s confirmed payment %s (transaction %s, amount %s)",
                    provider_id, message.id, transaction.id, amount)

        self._request_rating(engagement, message.sender_id, provider_id, listing, transaction.id)
        return PaymentResponse(
            payment_message=self.get_message(message.id),
            transaction=self.get_transaction(transaction.id),
            message="Payment confirmed",
        )

    def resolve_visibility(self, provider_id: str, engagement_id: str,
                           choice: VisibilityChoice) -> EngagementResponse:
        engagement, listing = self._owned_engagement(provider_id, engagement_id)
        target = VISIBILITY_OUTCOMES[choice]
        if engagement.state == target:
            return EngagementResponse(engagement=engagement, message="Visibility already resolved (idempotent return)")
        if engagement.state not in CONFIRMED_STATES:
            raise InvalidStateTransitionError("Listing visibility can only be resolved after payment confirmation")
        visited = path(engagement.state, target)

        fields = {"isReserved": False, "reservedBy": None, "active": choice == VisibilityChoice.MAKE_AVAILABLE}
        try:
            with self.store.transaction() as txn:
                txn.require(ENGAGEMENTS, engagement.id, {"state": engagement.state})
                txn.update(LISTINGS, listing.id, fields)
                txn.update(ENGAGEMENTS, engagement.id, {
                    "state": target,
                    "history": engagement.history + visited,
                    "updatedAt": self.clock(),
                })
                self._release_selection(txn, listing.id, engagement.client_id)
        except PreconditionFailedError:
            current = self.get_engagement(engagement_id)
            if current.state == target:
                return EngagementResponse(engagement=current, message="Visibility already resolved (idempotent return)")
            raise InvalidStateTransitionError(f"Engagement {engagement_id} changed while resolving visibility")

        logger.info("Provider %s resolved listing %s as %s", provider_id, listing.id, target.value)
        return EngagementResponse(engagement=self.get_engagement(engagement_id), message="Listing visibility updated")

    # Helpers

    def _owned_engagement(self, provider_id: str, engagement_id: str) -> tuple[Engagement, Listing]:
        engagement = self.get_engagement(engagement_id)
        listing = self.get_listing(engagement.listing_id)
        actor = engagement.participant(provider_id)
        if actor is None or actor.role != Role.PROVIDER or listing.provider_id != provider_id:
            raise AuthorizationError("Only the listing owner can act on this engagement")
        return engagement, listing

    def _engagement_for(self, message: Message) -> Optional[Engagement]:
        if message.engagement_id:
            return self.get_engagement(message.engagement_id)
        return self.open_engagement(message.sender_id, message.service_id)

    def _claim_selection(self, txn: StoreTransaction, listing_id: str, client_id: str, engagement_id: str) -> None:
        key = f"{listing_id}_{client_id}"
        if self.store.get(SELECTIONS, key) is None:
            txn.require_absent(SELECTIONS, key)
        else:
            txn.require(SELECTIONS, key, {"engagementId": None})
        txn.set(SELECTIONS, key, {"id": key, "listingId": listing_id, "clientId": client_id,
                                  "engagementId": engagement_id})

    def _release_selection(self, txn: StoreTransaction, listing_id: str, client_id: str) -> None:
        txn.update(SELECTIONS, f"{listing_id}_{client_id}", {"engagementId": None}, create=True)

    def _stage_message(self, txn: StoreTransaction, listing: Listing, client_id: str, sender_id: str,
                       receiver_id: str, text: str, kind: MessageKind = MessageKind.SYSTEM, **fields) -> Message:
        conversation = thread_id(client_id, listing.provider_id, listing.id)
        now = self.clock()
        message = Message(
            id=new_id(),
            conversation_id=conversation,
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            timestamp=now,
            kind=kind,
            service_id=listing.id,
            **fields,
        )
        txn.set(MESSAGES, message.id, message.to_document())

        thread = txn.get(THREADS, conversation)
        if thread is None:
            txn.set(THREADS, conversation, Thread(
                id=conversation,
                participants=sorted([client_id, listing.provider_id]),
                service_id=listing.id,
                service_title=listing.title,
                last_message=text,
                last_message_time=now,
                last_sender_id=sender_id,
                created_at=now,
            ).to_document())
        else:
            last = thread.get("lastMessageTime")
            # summaries never move backwards in time
            if last is None or _aware(now) >= _aware(last):
                txn.update(THREADS, conversation, {
                    "lastMessage": text,
                    "lastMessageTime": now,
                    "lastSenderId": sender_id,
                })
        return message

    def _notify(self, user_id: str, kind: NotificationType, text: str, payload: dict) -> Optional[Notification]:
        notification = Notification(
            id=new_id(),
            user_id=user_id,
            type=kind.value,
            message=text,
            payload=payload,
            created_at=self.clock(),
        )
        try:
            self.store.add(NOTIFICATIONS, notification.to_document())
        except StoreUnavailableError:
            logger.warning("Notification %s for %s not delivered: store unavailable", kind.value, user_id)
            return None
        return notification

    def _request_rating(self, engagement: Optional[Engagement], client_id: str, provider_id: str,
                        listing: Listing, transaction_id: str) -> None:
        try:
            self.rating.schedule(client_id, provider_id, listing.id, transaction_id)
        except StoreUnavailableError:
            logger.warning("Rating prompt for transaction %s not queued: store unavailable", transaction_id)
            return
        if engagement is None:
            return

        current = self.get_engagement(engagement.id)
        if current.state != EngagementState.PAYMENT_CONFIRMED:
            return
        ensure_transition(current.state, EngagementState.RATING_REQUESTED)
        try:
            with self.store.transaction() as txn:
                txn.require(ENGAGEMENTS, current.id, {"state": EngagementState.PAYMENT_CONFIRMED})
                txn.update(ENGAGEMENTS, current.id, {
                    "state": EngagementState.RATING_REQUESTED,
                    "history": current.history + [EngagementState.RATING_REQUESTED],
                    "updatedAt": self.clock(),
                })
        except (PreconditionFailedError, StoreUnavailableError) as e:
            logger.warning("Engagement %s left in payment_confirmed: %s", current.id, e)

    def _money(self, amount: Optional[Decimal]) -> str:
        return f"{self.settings.currency_symbol}{Decimal(amount or 0):,.2f}"
