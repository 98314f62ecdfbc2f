"""
Conversation grouping.

A client and a provider get one thread per service they talk about. The
inbox shows one entry per other participant: the most recently active thread
is primary and every other thread with that person is kept as a related
thread. When two threads share the same ``lastMessageTime`` the one seen
first stays primary.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from .models import Conversation, RelatedThread, Thread
from .store import InMemoryStore, Snapshot, Subscription

logger = logging.getLogger(__name__)

THREADS = "conversations"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def conversation_id(user_a: str, user_b: str) -> str:
    return "_".join(sorted([user_a, user_b]))


def thread_id(user_a: str, user_b: str, service_id: Optional[str] = None) -> str:
    pair = conversation_id(user_a, user_b)
    return f"{pair}_{service_id}" if service_id else pair


def _activity(thread: Thread) -> datetime:
    moment = thread.last_message_time
    if moment is None:
        return _OLDEST
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _as_related(thread: Thread) -> RelatedThread:
    return RelatedThread(
        id=thread.id,
        service_id=thread.service_id,
        service_title=thread.service_title,
        last_message_time=thread.last_message_time,
    )


def group_conversations(user_id: str, threads: Iterable[Union[Thread, dict]]) -> list[Conversation]:
    primaries: dict[str, Thread] = {}
    related: dict[str, list[Thread]] = {}

    for raw in threads:
        thread = raw if isinstance(raw, Thread) else Thread.model_validate(raw)
        other = thread.other_participant(user_id)
        if other is None or user_id not in thread.participants:
            continue

        current = primaries.get(other)
        if current is None:
            primaries[other] = thread
            related[other] = []
        elif _activity(thread) > _activity(current):
            related[other].append(current)
            primaries[other] = thread
        else:
            related[other].append(thread)

    conversations = []
    for other, primary in primaries.items():
        older = sorted(related[other], key=_activity, reverse=True)
        conversations.append(Conversation(
            id=conversation_id(user_id, other),
            other_participant_id=other,
            primary_thread=primary,
            related_threads=[_as_related(t) for t in older],
        ))

    conversations.sort(key=lambda c: _activity(c.primary_thread), reverse=True)
    return conversations


@dataclass(frozen=True)
class ThreadEvent:
    kind: str  # added | modified | removed
    thread: Thread


@dataclass(frozen=True)
class FeedState:
    """Immutable mirror of a user's threads, in first-seen order."""

    user_id: str
    threads: tuple[Thread, ...] = field(default_factory=tuple)

    @property
    def conversations(self) -> list[Conversation]:
        return group_conversations(self.user_id, self.threads)


def reduce_feed(state: FeedState, event: ThreadEvent) -> FeedState:
    remaining = tuple(t for t in state.threads if t.id != event.thread.id)
    if event.kind == "removed":
        return FeedState(state.user_id, remaining)

    # known threads keep their first-seen position
    if len(remaining) != len(state.threads):
        threads = tuple(event.thread if t.id == event.thread.id else t for t in state.threads)
        return FeedState(state.user_id, threads)
    return FeedState(state.user_id, state.threads + (event.thread,))


class ConversationFeed:
    """Keeps a grouped inbox in sync with the store until ``close`` is called."""

    def __init__(self, store: InMemoryStore, user_id: str,
                 on_change: Optional[Callable[[list[Conversation]], None]] = None):
        self.state = FeedState(user_id)
        self.on_change = on_change
        self._subscription: Optional[Subscription] = store.subscribe(
            THREADS,
            self._handle_snapshot,
            where=lambda doc: user_id in doc.get("participants", []),
        )

    @property
    def conversations(self) -> list[Conversation]:
        return self.state.conversations

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    def _handle_snapshot(self, snapshot: Snapshot) -> None:
        state = self.state
        for change in snapshot.changes:
            state = reduce_feed(state, ThreadEvent(change.kind, Thread.model_validate(change.document)))
        self.state = state
        if self.on_change:
            self.on_change(state.conversations)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
            logger.debug("Conversation feed for %s closed", self.state.user_id)
