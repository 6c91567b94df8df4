"""Time-limited inbound subscriptions.

Entries are immutable; extending a subscription (keepalive) replaces its
entry.  :meth:`SubscriptionRegistry.sweep` runs periodically from the
session and drops entries whose expiry has passed.

Nothing in the outbound publishing path registers entries; the inbound
read/keepalive actions that would are registered on the session as
extension points.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubscriptionEntry:
    """An active subscription and the wall-clock time it expires at."""

    topic: str
    expires_at: float


class SubscriptionRegistry:
    """Single-event-loop registry of subscriptions keyed by topic."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, SubscriptionEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, topic: object) -> bool:
        return topic in self._entries

    def register(self, topic: str, ttl: float, *, now: float | None = None) -> SubscriptionEntry:
        """Insert a subscription to *topic* expiring *ttl* seconds from *now*.

        An existing entry for *topic* is replaced.  Raises :class:`ValueError`
        if *ttl* is not positive.
        """
        if ttl <= 0:
            raise ValueError(f"Subscription TTL must be positive, got {ttl}")
        now = self._clock() if now is None else now
        entry = SubscriptionEntry(topic=topic, expires_at=now + ttl)
        self._entries[topic] = entry
        logger.debug("Registered subscription to %s (ttl %.0fs)", topic, ttl)
        return entry

    def renew(self, topic: str, ttl: float, *, now: float | None = None) -> SubscriptionEntry:
        """Extend a subscription by deleting and re-registering it."""
        self._entries.pop(topic, None)
        return self.register(topic, ttl, now=now)

    def remove(self, topic: str) -> bool:
        """Drop the subscription to *topic*.  Returns ``True`` if it existed."""
        return self._entries.pop(topic, None) is not None

    def get(self, topic: str) -> SubscriptionEntry | None:
        return self._entries.get(topic)

    def topics(self) -> list[str]:
        """Topics with a live entry, in registration order."""
        return list(self._entries)

    def sweep(self, now: float | None = None) -> set[str]:
        """Remove and return every topic whose entry expired before *now*.

        Entries expiring exactly at *now* are kept.  Iterates over a snapshot,
        so registrations made while sweeping are never lost.
        """
        now = self._clock() if now is None else now
        removed: set[str] = set()
        for topic, entry in list(self._entries.items()):
            if entry.expires_at < now and self._entries.get(topic) is entry:
                del self._entries[topic]
                removed.add(topic)
                logger.debug("Expiring subscription to topic %s", topic)
        return removed
