"""
Unit Tests for Rating Prompts and Reviews

Tests cover:
1. Prompt scheduling idempotency
2. The single most recent unread prompt (query and live watch)
3. Exactly-once consumption
4. Review submission rules
"""

from decimal import Decimal

import pytest

from conftest import CLIENT_ID, LISTING_ID, OTHER_CLIENT_ID, PROVIDER_ID
from engagement.errors import AlreadyProcessedError, AuthorizationError, NotFoundError, ValidationError
from engagement.models import ProofArtifact
from engagement.rating import REVIEWS
from engagement.service import LISTINGS


def confirmed_transaction(service) -> str:
    engagement = service.select_listing(CLIENT_ID, LISTING_ID).engagement
    service.accept(PROVIDER_ID, engagement.id)
    artifact = ProofArtifact(url="https://cdn.test/p.png", size=10, content_type="image/png")
    message = service.submit_payment(CLIENT_ID, engagement.id, artifact, amount=Decimal("500")).payment_message
    return service.confirm_payment(PROVIDER_ID, message.id).transaction.id


class TestPromptScheduling:
    """Tests for queuing rating prompts."""

    def test_schedule_is_idempotent_per_transaction(self, service):
        """Test scheduling twice for one transaction returns the same prompt."""
        first = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")
        second = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")

        assert first.id == second.id
        assert first.payload["providerName"] == "Service Provider"

    def test_pending_prompt_is_most_recent(self, service):
        """Test only the newest unread prompt is surfaced."""
        service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")
        newest = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-2")

        assert service.rating.pending_prompt(CLIENT_ID).id == newest.id
        assert service.rating.pending_prompt(OTHER_CLIENT_ID) is None

    def test_watch_follows_consumption(self, service):
        """Test the live prompt moves to the next one after consumption."""
        seen = []
        older = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")
        subscription = service.rating.watch(CLIENT_ID, seen.append)
        newer = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-2")

        service.rating.consume(CLIENT_ID, newer.id)

        assert seen[0].id == older.id
        assert seen[1].id == newer.id
        assert seen[-1].id == older.id
        subscription.unsubscribe()


class TestConsumption:
    """Tests for marking a prompt read."""

    def test_consume_exactly_once(self, service):
        """Test the second consumption raises AlreadyProcessedError."""
        prompt = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")

        consumed = service.rating.consume(CLIENT_ID, prompt.id)

        assert consumed.read is True
        with pytest.raises(AlreadyProcessedError):
            service.rating.consume(CLIENT_ID, prompt.id)
        assert service.rating.pending_prompt(CLIENT_ID) is None

    def test_cannot_consume_someone_elses(self, service):
        """Test consuming another user's prompt is an authorization error."""
        prompt = service.rating.schedule(CLIENT_ID, PROVIDER_ID, LISTING_ID, "txn-1")

        with pytest.raises(AuthorizationError):
            service.rating.consume(PROVIDER_ID, prompt.id)

    def test_unknown_prompt(self, service):
        """Test consuming a missing notification raises NotFoundError."""
        with pytest.raises(NotFoundError):
            service.rating.consume(CLIENT_ID, "missing")


class TestReviews:
    """Tests for rating a confirmed transaction."""

    def test_review_updates_listing(self, service, store, listing):
        """Test a review is stored and the listing totals increase."""
        transaction_id = confirmed_transaction(service)

        review = service.rating.submit_review(CLIENT_ID, transaction_id, 4, "On time")

        assert review.target_id == PROVIDER_ID
        assert store.get(REVIEWS, review.id)["rating"] == 4
        stored = store.get(LISTINGS, LISTING_ID)
        assert stored["ratingTotal"] == 4
        assert stored["reviewCount"] == 1

    def test_review_once_per_transaction(self, service, store, listing):
        """Test a second review for the same transaction is rejected."""
        transaction_id = confirmed_transaction(service)
        service.rating.submit_review(CLIENT_ID, transaction_id, 5)

        with pytest.raises(AlreadyProcessedError):
            service.rating.submit_review(CLIENT_ID, transaction_id, 1)
        assert store.get(LISTINGS, LISTING_ID)["reviewCount"] == 1

    def test_only_client_reviews(self, service, listing):
        """Test the provider can't rate their own transaction."""
        transaction_id = confirmed_transaction(service)

        with pytest.raises(AuthorizationError):
            service.rating.submit_review(PROVIDER_ID, transaction_id, 5)

    def test_rating_range(self, service, listing):
        """Test ratings outside 1-5 are rejected."""
        transaction_id = confirmed_transaction(service)

        with pytest.raises(ValidationError):
            service.rating.submit_review(CLIENT_ID, transaction_id, 6)

    def test_pending_transaction_cannot_be_rated(self, service, listing):
        """Test an unconfirmed payment can't be reviewed yet."""
        engagement = service.select_listing(CLIENT_ID, LISTING_ID).engagement
        service.accept(PROVIDER_ID, engagement.id)
        artifact = ProofArtifact(url="https://cdn.test/p.png", size=10, content_type="image/png")
        transaction = service.submit_payment(CLIENT_ID, engagement.id, artifact).transaction

        with pytest.raises(ValidationError):
            service.rating.submit_review(CLIENT_ID, transaction.id, 5)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
