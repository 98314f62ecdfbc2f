"""
Unit Tests for the In-Memory Store

Tests cover:
1. Queries (filters, predicates, ordering)
2. Atomic increments and dotted paths
3. Transactions with preconditions
4. Availability failures
5. Live subscriptions
"""

from typing import Set, get_type_hints

import pytest

from engagement.errors import NotFoundError, StoreUnavailableError
from engagement.store import Increment, InMemoryStore, PreconditionFailedError, StoreTransaction


class TestQueries:
    """Tests for equality filters, predicates and ordering."""

    def test_filter_and_order(self):
        """Test equality filters combined with ascending order."""
        store = InMemoryStore()
        store.set("messages", "m2", {"conversationId": "c1", "timestamp": 2})
        store.set("messages", "m1", {"conversationId": "c1", "timestamp": 1})
        store.set("messages", "m3", {"conversationId": "c2", "timestamp": 0})

        docs = store.query("messages", conversationId="c1", order_by="timestamp")

        assert [d["id"] for d in docs] == ["m1", "m2"]

    def test_missing_order_values_sort_last(self):
        """Test documents without the order field come after the rest."""
        store = InMemoryStore()
        store.set("notes", "a", {"createdAt": None})
        store.set("notes", "b", {"createdAt": 5})
        store.set("notes", "c", {"createdAt": 9})

        docs = store.query("notes", order_by="createdAt", descending=True)

        assert [d["id"] for d in docs] == ["c", "b", "a"]

    def test_predicate_and_limit(self):
        """Test a where predicate with a limit."""
        store = InMemoryStore()
        for i in range(5):
            store.set("threads", f"t{i}", {"participants": ["u1", f"p{i}"]})

        docs = store.query("threads", where=lambda d: "u1" in d["participants"], limit=2)

        assert len(docs) == 2

    def test_returned_documents_are_copies(self):
        """Test callers can't mutate stored documents through query results."""
        store = InMemoryStore()
        store.set("listings", "l1", {"title": "Before"})

        store.get("listings", "l1")["title"] = "After"

        assert store.get("listings", "l1")["title"] == "Before"


class TestIncrements:
    """Tests for atomic field increments."""

    def test_increment_creates_nested_counter(self):
        """Test an upsert increment on a missing document starts from zero."""
        store = InMemoryStore()

        store.update("providers", "p1", {"stats.totalRevenue": Increment(500)}, create=True)
        store.update("providers", "p1", {"stats.totalRevenue": Increment(250)})

        assert store.get("providers", "p1")["stats"]["totalRevenue"] == 750

    def test_update_missing_document_fails(self):
        """Test a plain update on a missing document raises NotFoundError."""
        store = InMemoryStore()

        with pytest.raises(NotFoundError):
            store.update("providers", "ghost", {"stats.totalRevenue": Increment(1)})


class TestTransactions:
    """Tests for all-or-nothing commits."""

    def test_failed_precondition_writes_nothing(self):
        """Test a failed precondition aborts every buffered write."""
        store = InMemoryStore()
        store.set("listings", "l1", {"isReserved": True, "reservedBy": "c1"})

        with pytest.raises(PreconditionFailedError):
            with store.transaction() as txn:
                txn.set("messages", "m1", {"text": "hello"})
                txn.require("listings", "l1", {"isReserved": False})
                txn.update("listings", "l1", {"reservedBy": "c2"})

        assert store.get("messages", "m1") is None
        assert store.get("listings", "l1")["reservedBy"] == "c1"

    def test_commit_reports_touched_collections(self):
        """Test commit returns every collection it read or wrote."""
        store = InMemoryStore()
        store.set("listings", "l1", {"isReserved": False})
        txn = StoreTransaction(store)
        txn.require("listings", "l1", {"isReserved": False})
        txn.set("messages", "m1", {"text": "hello"})
        txn.update("providers", "p1", {"stats.totalRevenue": Increment(5)}, create=True)

        touched = txn.commit()

        assert touched == {"listings", "messages", "providers"}
        assert get_type_hints(StoreTransaction.commit)["return"] == Set[str]
        assert get_type_hints(InMemoryStore._notify)["collections"] == Set[str]

    def test_require_absent(self):
        """Test require_absent rejects an existing document."""
        store = InMemoryStore()
        store.set("reviews", "r1", {"rating": 5})

        with pytest.raises(PreconditionFailedError):
            with store.transaction() as txn:
                txn.require_absent("reviews", "r1")
                txn.set("reviews", "r1", {"rating": 1})

        assert store.get("reviews", "r1")["rating"] == 5

    def test_compare_and_set(self):
        """Test compare_and_set succeeds once for the same expectation."""
        store = InMemoryStore()
        store.set("notifications", "n1", {"read": False})

        assert store.compare_and_set("notifications", "n1", {"read": False}, {"read": True}) is True
        assert store.compare_and_set("notifications", "n1", {"read": False}, {"read": True}) is False

    def test_unavailable_collection_aborts_whole_commit(self):
        """Test one unavailable collection blocks writes to every other one."""
        store = InMemoryStore()
        store.set("messages", "m1", {"paymentConfirmed": False})
        store.unavailable.add("providers")

        with pytest.raises(StoreUnavailableError):
            with store.transaction() as txn:
                txn.update("messages", "m1", {"paymentConfirmed": True})
                txn.update("providers", "p1", {"stats.totalRevenue": Increment(10)}, create=True)

        store.unavailable.clear()
        assert store.get("messages", "m1")["paymentConfirmed"] is False
        assert store.get("providers", "p1") is None

    def test_wildcard_unavailable(self):
        """Test '*' makes every collection unavailable."""
        store = InMemoryStore()
        store.unavailable.add("*")

        with pytest.raises(StoreUnavailableError):
            store.query("anything")


class TestSubscriptions:
    """Tests for live query delivery."""

    def test_initial_and_change_delivery(self):
        """Test subscribers get the current result then added/modified/removed changes."""
        store = InMemoryStore()
        store.set("notifications", "n1", {"userId": "u1", "read": False})
        snapshots = []

        subscription = store.subscribe("notifications", snapshots.append, userId="u1", read=False)
        store.set("notifications", "n2", {"userId": "u1", "read": False})
        store.update("notifications", "n1", {"read": True})

        assert [c.kind for c in snapshots[0].changes] == ["added"]
        assert [(c.kind, c.document["id"]) for c in snapshots[1].changes] == [("added", "n2")]
        assert [(c.kind, c.document["id"]) for c in snapshots[2].changes] == [("removed", "n1")]

        subscription.unsubscribe()
        store.set("notifications", "n3", {"userId": "u1", "read": False})
        assert len(snapshots) == 3

    def test_failing_handler_does_not_break_writes(self):
        """Test a raising subscriber is logged and the write still lands."""
        store = InMemoryStore()

        def explode(snapshot):
            if snapshot.changes:
                raise RuntimeError("view crashed")

        store.subscribe("messages", explode)
        store.set("messages", "m1", {"text": "hi"})

        assert store.get("messages", "m1")["text"] == "hi"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
