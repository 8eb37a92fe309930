"""
Shared usage cache with change notification.

Single source of truth for the latest snapshots, errors and costs per
account. Safe to use from the event loop and from worker threads.
"""

import asyncio
import copy
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Deque, Dict, List, Optional, Set, Tuple

from .models import AccountId, CostSnapshot, UsageSnapshot

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_CAPACITY = 64


class CacheEventKind(Enum):
    """Kinds of change published by the cache."""
    SNAPSHOT_UPDATED = "snapshot_updated"
    ERROR_OCCURRED = "error_occurred"
    ERROR_CLEARED = "error_cleared"
    COST_UPDATED = "cost_updated"


@dataclass(frozen=True)
class CacheEvent:
    """A change notification for one account."""
    kind: CacheEventKind
    account: AccountId
    message: Optional[str] = None


class Subscription:
    """Bounded, drop-oldest event queue for one subscriber.

    Publishing never blocks; when the queue is full the oldest event is
    discarded and counted in `dropped`.
    """

    def __init__(self, capacity: int = DEFAULT_SUBSCRIPTION_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self.dropped = 0
        self._events: Deque[CacheEvent] = deque()
        self._lock = threading.Lock()
        self._waiter: Optional[Tuple[asyncio.AbstractEventLoop, asyncio.Event]] = None
        self.closed = False

    def _push(self, event: CacheEvent) -> None:
        with self._lock:
            if self.closed:
                return
            if len(self._events) >= self.capacity:
                self._events.popleft()
                self.dropped += 1
            self._events.append(event)
            waiter, self._waiter = self._waiter, None

        if waiter is not None:
            loop, ready = waiter
            try:
                loop.call_soon_threadsafe(ready.set)
            except RuntimeError:
                # Subscriber's loop is closed; it will never read again.
                pass

    def get_nowait(self) -> Optional[CacheEvent]:
        """Pop the oldest pending event, or None."""
        with self._lock:
            if self._events:
                return self._events.popleft()
            return None

    def drain(self) -> List[CacheEvent]:
        """Pop every pending event in emission order."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    async def get(self) -> CacheEvent:
        """Wait for the next event."""
        loop = asyncio.get_running_loop()
        while True:
            ready = asyncio.Event()
            with self._lock:
                if self._events:
                    return self._events.popleft()
                self._waiter = (loop, ready)
            await ready.wait()


class UsageCache:
    """Concurrency-safe store of the latest per-account state.

    One lock guards every table so a reader never observes a snapshot
    alongside the error it replaced. Snapshots and errors for an account
    are mutually exclusive.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[AccountId, UsageSnapshot] = {}
        self._costs: Dict[AccountId, CostSnapshot] = {}
        self._errors: Dict[AccountId, str] = {}
        self._last_fetch: Dict[AccountId, float] = {}
        self._notified: Set[AccountId] = set()
        self._subscriptions: List[Subscription] = []

    # ── Subscriptions ────────────────────────────────────────────

    def subscribe(self, capacity: int = DEFAULT_SUBSCRIPTION_CAPACITY) -> Subscription:
        """Register a new subscriber for change events."""
        subscription = Subscription(capacity)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.closed = True

    def _publish(self, event: CacheEvent) -> None:
        # Caller holds self._lock, so every subscriber sees emission order.
        for subscription in self._subscriptions:
            subscription._push(event)

    # ── Reads ────────────────────────────────────────────────────

    def get_snapshot(self, account: AccountId) -> Optional[UsageSnapshot]:
        with self._lock:
            return copy.deepcopy(self._snapshots.get(account))

    def get_cost(self, account: AccountId) -> Optional[CostSnapshot]:
        with self._lock:
            return copy.deepcopy(self._costs.get(account))

    def get_error(self, account: AccountId) -> Optional[str]:
        with self._lock:
            return self._errors.get(account)

    def snapshots(self) -> List[Tuple[AccountId, UsageSnapshot]]:
        """Every account that currently has a snapshot."""
        with self._lock:
            return [
                (account, copy.deepcopy(snapshot))
                for account, snapshot in self._snapshots.items()
            ]

    def last_fetch_age(self, account: AccountId) -> Optional[timedelta]:
        """Time since the last fetch attempt, or None if never fetched."""
        with self._lock:
            last = self._last_fetch.get(account)
        if last is None:
            return None
        return timedelta(seconds=time.monotonic() - last)

    # ── Writes ───────────────────────────────────────────────────

    def update_snapshot(self, account: AccountId, snapshot: UsageSnapshot) -> None:
        """Store a fresh snapshot and clear any prior error.

        Publishes ERROR_CLEARED (only if an error was present) followed by
        SNAPSHOT_UPDATED.
        """
        with self._lock:
            self._snapshots[account] = snapshot
            cleared = self._errors.pop(account, None)
            self._last_fetch[account] = time.monotonic()
            if cleared is not None:
                self._publish(CacheEvent(CacheEventKind.ERROR_CLEARED, account))
            self._publish(CacheEvent(CacheEventKind.SNAPSHOT_UPDATED, account))

    def set_error(self, account: AccountId, message: str) -> None:
        """Replace the account's snapshot with an error message."""
        with self._lock:
            self._snapshots.pop(account, None)
            self._errors[account] = message
            self._last_fetch[account] = time.monotonic()
            self._publish(CacheEvent(CacheEventKind.ERROR_OCCURRED, account, message))

    def update_cost(self, account: AccountId, cost: CostSnapshot) -> None:
        with self._lock:
            self._costs[account] = cost
            self._publish(CacheEvent(CacheEventKind.COST_UPDATED, account))

    # ── Scheduling and notification state ────────────────────────

    def should_refresh(self, account: AccountId, cooldown: timedelta) -> bool:
        """True if never fetched or at least `cooldown` has elapsed."""
        age = self.last_fetch_age(account)
        return age is None or age >= cooldown

    def should_notify(self, account: AccountId, threshold: float) -> bool:
        """True once per breach: usage is at or over threshold and not yet notified."""
        with self._lock:
            if account in self._notified:
                return False
            snapshot = self._snapshots.get(account)
            if snapshot is None:
                return False
            return snapshot.max_usage() >= threshold

    def mark_notified(self, account: AccountId) -> None:
        with self._lock:
            self._notified.add(account)

    def reset_notification(self, account: AccountId) -> None:
        with self._lock:
            self._notified.discard(account)
