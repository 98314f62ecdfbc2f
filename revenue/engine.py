import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from engagement.config import Settings, get_settings
from engagement.grouper import THREADS
from engagement.models import ACCEPTED_TRANSACTION_STATUSES, PAYMENT_NOTIFICATION_TYPES
from engagement.store import InMemoryStore

from .candidates import (
    Candidate,
    CandidateKind,
    TransactionCandidate,
    normalize_message,
    normalize_notification,
    normalize_transaction,
)
from .models import UNKNOWN_SERVICE, RevenueSummary, ServiceRevenue

logger = logging.getLogger(__name__)

TRANSACTIONS = "transactions"
NOTIFICATIONS = "notifications"
MESSAGES = "messages"
LISTINGS = "listings"

# transactions are seen first so they win id collisions
_KIND_ORDER = {CandidateKind.TRANSACTION: 0, CandidateKind.NOTIFICATION: 1, CandidateKind.MESSAGE: 2}

ZERO = Decimal("0")


@dataclass
class ServiceDirectory:
    """Lookups used to attribute candidates to services."""

    thread_services: dict[str, str] = field(default_factory=dict)
    thread_titles: dict[str, str] = field(default_factory=dict)
    listing_titles: dict[str, str] = field(default_factory=dict)

    def service_for(self, candidate: Candidate) -> Optional[str]:
        if candidate.service_id:
            return candidate.service_id
        if candidate.conversation_id:
            return self.thread_services.get(candidate.conversation_id)
        return None

    def name_for(self, service_id: Optional[str]) -> str:
        if service_id is None:
            return UNKNOWN_SERVICE
        return self.listing_titles.get(service_id) or self.thread_titles.get(service_id) or UNKNOWN_SERVICE


@dataclass
class CandidateSet:
    candidates: list[Candidate]
    directory: ServiceDirectory = field(default_factory=ServiceDirectory)


def _pct_change(current: Decimal, previous: Decimal) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round(float((current - previous) / previous * 100), 2)


class RevenueReconciler:
    """Merges transactions, payment notifications and proof messages into one ledger view."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def collect(self, store: InMemoryStore, user_id: str, now: Optional[datetime] = None) -> CandidateSet:
        transactions = store.query(
            TRANSACTIONS,
            where=lambda d: d.get("status") in ACCEPTED_TRANSACTION_STATUSES
            and user_id in (d.get("providerId"), d.get("clientId")),
        )
        notifications = store.query(
            NOTIFICATIONS,
            userId=user_id,
            where=lambda d: d.get("type") in PAYMENT_NOTIFICATION_TYPES,
        )
        messages = store.query(
            MESSAGES,
            where=lambda d: d.get("paymentProof") is not None
            and user_id in (d.get("senderId"), d.get("receiverId")),
        )
        logger.info("Found %d transactions, %d payment notifications and %d payment messages for %s",
                    len(transactions), len(notifications), len(messages), user_id)

        candidates: list[Candidate] = [normalize_transaction(d, now) for d in transactions]
        candidates += [normalize_notification(d, now) for d in notifications]
        candidates += [normalize_message(d, now) for d in messages]

        directory = ServiceDirectory()
        for thread in store.query(THREADS, where=lambda d: user_id in d.get("participants", [])):
            if thread.get("serviceId"):
                directory.thread_services[thread["id"]] = thread["serviceId"]
                if thread.get("serviceTitle"):
                    directory.thread_titles[thread["serviceId"]] = thread["serviceTitle"]
        service_ids = {c.service_id for c in candidates if c.service_id} | set(directory.thread_services.values())
        for service_id in service_ids:
            listing = store.get(LISTINGS, service_id)
            if listing and listing.get("title"):
                directory.listing_titles[service_id] = listing["title"]

        return CandidateSet(candidates=candidates, directory=directory)

    def prepare(self, user_id: str, candidates: Iterable[Candidate]) -> list[Candidate]:
        """Role filter, then id dedup, then the optional cross-source match."""
        involved = [c for c in candidates if c.involves(user_id)]
        involved.sort(key=lambda c: _KIND_ORDER[c.kind])

        seen: set[str] = set()
        unique = []
        for candidate in involved:
            if candidate.id in seen:
                continue
            seen.add(candidate.id)
            unique.append(candidate)

        if self.settings.cross_source_dedup:
            unique = self._drop_cross_source_duplicates(unique)
        return unique

    def _drop_cross_source_duplicates(self, candidates: list[Candidate]) -> list[Candidate]:
        window = timedelta(minutes=self.settings.dedup_proximity_minutes)
        transactions = [c for c in candidates if isinstance(c, TransactionCandidate)]

        def duplicates_transaction(candidate: Candidate) -> bool:
            for txn in transactions:
                if candidate.amount <= 0 or candidate.amount != txn.amount:
                    continue
                if candidate.proof_ref and txn.proof_ref and candidate.proof_ref != txn.proof_ref:
                    continue
                if abs(candidate.parsed_date - txn.parsed_date) <= window:
                    return True
            return False

        kept = [c for c in candidates if isinstance(c, TransactionCandidate) or not duplicates_transaction(c)]
        if len(kept) != len(candidates):
            logger.info("Cross-source match dropped %d duplicate candidates", len(candidates) - len(kept))
        return kept

    def reconcile(self, user_id: str, candidates: Iterable[Candidate], today: Optional[date] = None,
                  directory: Optional[ServiceDirectory] = None) -> RevenueSummary:
        today = today or datetime.now(timezone.utc).date()
        directory = directory or ServiceDirectory()
        current_days = self.settings.current_window_days
        prior_days = self.settings.prior_window_days

        current_start = today - timedelta(days=current_days)
        prior_end = today - timedelta(days=current_days + 1)
        prior_start = today - timedelta(days=current_days + prior_days)

        unique = self.prepare(user_id, candidates)

        current = [c for c in unique if current_start <= c.parsed_date.date() <= today]
        prior = [c for c in unique if prior_start <= c.parsed_date.date() <= prior_end]

        current_revenue = sum((c.amount for c in current if c.received_by(user_id)), ZERO)
        previous_revenue = sum((c.amount for c in prior if c.received_by(user_id)), ZERO)
        client_spending = sum((c.amount for c in current if c.paid_by(user_id)), ZERO)
        change_pct = _pct_change(current_revenue, previous_revenue)

        breakdown = self._breakdown([c for c in current if c.received_by(user_id)], directory)

        provider_income = current_revenue
        used_fallback = False
        if current_revenue == 0:
            accepted = [
                c for c in unique
                if isinstance(c, TransactionCandidate) and c.accepted and c.received_by(user_id)
            ]
            total = sum((c.amount for c in accepted), ZERO)
            if total > 0:
                current_revenue = total
                used_fallback = True
                logger.info("No windowed revenue for %s; using all %d accepted transactions",
                            user_id, len(accepted))

        return RevenueSummary(
            user_id=user_id,
            current_revenue=current_revenue,
            previous_revenue=previous_revenue,
            revenue_change_pct=change_pct,
            per_service_breakdown=breakdown,
            provider_income=provider_income,
            client_spending=client_spending,
            total_transaction_count=len(unique),
            used_fallback=used_fallback,
        )

    def _breakdown(self, received: list[Candidate], directory: ServiceDirectory) -> list[ServiceRevenue]:
        buckets: dict[Optional[str], list[Decimal]] = {}
        for candidate in received:
            if candidate.amount <= 0:
                continue
            buckets.setdefault(directory.service_for(candidate), []).append(candidate.amount)

        entries = []
        for service_id, amounts in buckets.items():
            revenue = sum(amounts, ZERO)
            entries.append(ServiceRevenue(
                service_id=service_id,
                name=directory.name_for(service_id),
                revenue=revenue,
                count=len(amounts),
                avg_revenue=revenue / len(amounts),
            ))
        entries.sort(key=lambda e: e.revenue, reverse=True)
        return entries[:self.settings.top_services]

    def summarize(self, store: InMemoryStore, user_id: str, today: Optional[date] = None) -> RevenueSummary:
        collected = self.collect(store, user_id)
        return self.reconcile(user_id, collected.candidates, today=today, directory=collected.directory)
