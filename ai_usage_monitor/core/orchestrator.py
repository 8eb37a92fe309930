"""
Quota polling orchestration.

Drives each account through Idle -> Fetching -> Idle/Backoff: an initial
fetch for every account, a fixed-cadence ticker gated by the usage cache
cooldown and each account's retry scheduler, and immediate re-fetches when
a credential file changes.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Set

from ai_usage_monitor.providers.base import CredentialError, UsageProvider
from ai_usage_monitor.providers.registry import ProviderRegistry

from .cache import UsageCache
from .models import AccountId, UsageSnapshot
from .retry import RetryScheduler
from .watcher import CredentialWatcher

logger = logging.getLogger(__name__)

TICK_INTERVAL = timedelta(seconds=1)
FETCH_TIMEOUT = timedelta(seconds=30)
NOTIFICATION_THRESHOLD = 0.9

Notifier = Callable[[AccountId, float], None]


class AccountState(Enum):
    """Polling state of one account."""
    IDLE = "idle"
    FETCHING = "fetching"
    BACKOFF = "backoff"


class PollingOrchestrator:
    """Schedules usage fetches and writes their outcome to the cache.

    Fetches for one account are serialized by a per-account lock. Every
    fetch is numbered when it is initiated, and a result older than the
    last one applied is dropped, so ordering follows initiation rather
    than completion.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: UsageCache,
        watcher: Optional[CredentialWatcher] = None,
        tick: timedelta = TICK_INTERVAL,
        fetch_timeout: timedelta = FETCH_TIMEOUT,
        notification_threshold: float = NOTIFICATION_THRESHOLD,
        notifier: Optional[Notifier] = None,
        retry_factory: Callable[[], RetryScheduler] = RetryScheduler,
    ):
        """Initialize orchestrator.

        Args:
            registry: Enabled providers
            cache: Shared usage cache
            watcher: Optional credential watcher feeding forced re-fetches
            tick: Ticker cadence
            fetch_timeout: Upper bound on a single fetch
            notification_threshold: Used fraction that triggers a notification
            notifier: Called with (account, max usage) once per breach
            retry_factory: Builds one retry scheduler per account
        """
        if tick.total_seconds() <= 0:
            raise ValueError("tick must be > 0")
        if fetch_timeout.total_seconds() <= 0:
            raise ValueError("fetch_timeout must be > 0")
        if not 0.0 <= notification_threshold <= 1.0:
            raise ValueError("notification_threshold must be between 0 and 1")

        self.registry = registry
        self.cache = cache
        self.watcher = watcher
        self.tick = tick
        self.fetch_timeout = fetch_timeout
        self.notification_threshold = notification_threshold
        self.notifier = notifier

        accounts = registry.accounts()
        self.retry: Dict[AccountId, RetryScheduler] = {a: retry_factory() for a in accounts}
        self._locks: Dict[AccountId, asyncio.Lock] = {a: asyncio.Lock() for a in accounts}
        self._in_flight: Dict[AccountId, int] = {a: 0 for a in accounts}
        self._applied: Dict[AccountId, int] = {a: 0 for a in accounts}
        self._sequence = 0
        self._tasks: Set[asyncio.Task] = set()

    def state(self, account: AccountId) -> AccountState:
        if self._in_flight.get(account):
            return AccountState.FETCHING
        retry = self.retry.get(account)
        if retry is not None and retry.is_in_backoff():
            return AccountState.BACKOFF
        return AccountState.IDLE

    def is_in_flight(self, account: AccountId) -> bool:
        return self._in_flight.get(account, 0) > 0

    # ── Fetching ─────────────────────────────────────────────────

    def _begin(self, account: AccountId) -> int:
        self._in_flight[account] = self._in_flight.get(account, 0) + 1
        self._sequence += 1
        return self._sequence

    def _spawn(self, account: AccountId, force: bool) -> asyncio.Task:
        sequence = self._begin(account)
        task = asyncio.create_task(self._run_fetch(account, sequence, force))
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def fetch_account(self, account: AccountId, force: bool = False) -> bool:
        """Fetch one account and apply the outcome to the cache.

        Args:
            account: Account to fetch
            force: Fetch even if the cooldown has not elapsed

        Returns:
            True if a result (snapshot or error) was applied
        """
        sequence = self._begin(account)
        return await self._run_fetch(account, sequence, force)

    async def _run_fetch(self, account: AccountId, sequence: int, force: bool) -> bool:
        try:
            provider = self.registry.get(account)
            if provider is None:
                logger.debug("No provider enabled for %s", account.value)
                return False

            async with self._locks[account]:
                retry = self.retry[account]
                if not force and not self.cache.should_refresh(account, retry.current_delay()):
                    return False

                snapshot, error = await self._attempt(provider)

                if sequence < self._applied[account]:
                    logger.debug("Discarding stale %s fetch #%d", account.value, sequence)
                    return False
                self._applied[account] = sequence

                if snapshot is not None:
                    retry.record_success()
                    self.cache.update_snapshot(account, snapshot)
                    logger.info("Fetched %s usage", account.value)
                    self._check_notification(account, snapshot)
                else:
                    retry.record_failure()
                    self.cache.set_error(account, error)
                    logger.warning(
                        "Fetching %s usage failed (%d consecutive, next attempt in %ss): %s",
                        account.value,
                        retry.consecutive_failures,
                        int(retry.current_delay().total_seconds()),
                        error,
                    )
                return True
        finally:
            self._in_flight[account] -= 1

    async def _attempt(self, provider: UsageProvider):
        """Returns (snapshot, None) on success or (None, message) on failure."""
        if not provider.has_valid_credentials():
            return None, provider.credential_error_hint()

        timeout = self.fetch_timeout.total_seconds()
        try:
            snapshot = await asyncio.wait_for(provider.fetch_usage(), timeout=timeout)
        except asyncio.TimeoutError:
            return None, f"{provider.name} usage request timed out after {timeout:g}s"
        except CredentialError as e:
            return None, str(e) or provider.credential_error_hint()
        except Exception as e:
            return None, str(e) or e.__class__.__name__
        return snapshot, None

    def _check_notification(self, account: AccountId, snapshot: UsageSnapshot) -> None:
        usage = snapshot.max_usage()
        if usage < self.notification_threshold:
            # Usage fell back below the threshold: the next breach notifies again.
            self.cache.reset_notification(account)
            return

        if not self.cache.should_notify(account, self.notification_threshold):
            return
        if self.notifier is not None:
            try:
                self.notifier(account, usage)
            except Exception:
                logger.exception("Notifier failed for %s", account.value)
        self.cache.mark_notified(account)

    # ── Scheduling ───────────────────────────────────────────────

    async def tick_once(self) -> None:
        """Start a fetch for every account whose cooldown has elapsed."""
        for account in self.registry.accounts():
            if self.is_in_flight(account):
                continue
            if self.cache.should_refresh(account, self.retry[account].current_delay()):
                self._spawn(account, force=False)

    async def on_credentials_changed(self, account: AccountId) -> None:
        """Leave backoff and fetch immediately after a credential change."""
        retry = self.retry.get(account)
        if retry is None:
            return
        retry.record_success()
        await self.fetch_account(account, force=True)

    async def _consume_changes(self) -> None:
        while True:
            account = await self.watcher.changes.get()
            self._track(asyncio.create_task(self.on_credentials_changed(account)))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until stop_event is set, then settle in-flight fetches."""
        accounts = self.registry.accounts()
        logger.info("Polling started for %s", ", ".join(a.value for a in accounts) or "no accounts")

        for account in accounts:
            self._spawn(account, force=True)

        consumer = None
        if self.watcher is not None:
            consumer = asyncio.create_task(self._consume_changes())

        try:
            while not stop_event.is_set():
                try:
                    await self.tick_once()
                except Exception:
                    logger.exception("Polling tick failed")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.tick.total_seconds())
                except asyncio.TimeoutError:
                    pass
        finally:
            if consumer is not None:
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)
            await self.shutdown()
        logger.info("Polling stopped")

    async def shutdown(self) -> None:
        """Let in-flight fetches finish within the fetch timeout, then cancel the rest."""
        tasks = set(self._tasks)
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=self.fetch_timeout.total_seconds())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
