"""
Credential file watching.

Watches each account's credential file and emits the account id, once per
burst of filesystem events, so the orchestrator can re-fetch immediately.
"""

import asyncio
import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import AccountId

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.2


class _CredentialEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; only forwards matching account ids."""

    def __init__(self, watcher: "CredentialWatcher", files: Dict[str, List[AccountId]]):
        super().__init__()
        self._watcher = watcher
        self._files = files

    def _forward(self, raw_path) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        if not raw_path:
            return
        for account in self._files.get(Path(raw_path).name, ()):
            self._watcher.notify_threadsafe(account)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic saves write a temp file and rename it over the target.
        if not event.is_directory:
            self._forward(getattr(event, "dest_path", ""))


class CredentialWatcher:
    """Debounced watcher over credential files.

    Watch failures are never fatal: an account whose directory is missing
    or cannot be watched simply gets no instant refresh.
    """

    def __init__(
        self,
        paths: Mapping[AccountId, Path],
        debounce: float = DEBOUNCE_SECONDS,
    ):
        """Initialize the watcher.

        Args:
            paths: Credential file per account
            debounce: Seconds to wait for a burst to settle before emitting
        """
        self.paths: Dict[AccountId, Path] = {
            account: Path(path).expanduser() for account, path in paths.items()
        }
        self.debounce = debounce
        self.changes: "asyncio.Queue[AccountId]" = asyncio.Queue()
        self.watched_accounts: Set[AccountId] = set()
        self._raw: "asyncio.Queue[AccountId]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._task: Optional[asyncio.Task] = None

    def _directories(self) -> Dict[Path, Dict[str, List[AccountId]]]:
        directories: Dict[Path, Dict[str, List[AccountId]]] = {}
        for account, path in self.paths.items():
            files = directories.setdefault(path.parent, defaultdict(list))
            files[path.name].append(account)
        return directories

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Start watching and the debounce task.

        Args:
            loop: Loop that receives events; defaults to the running loop
        """
        self._loop = loop or asyncio.get_running_loop()
        self._task = self._loop.create_task(self._debounce_loop())

        # Emitters scheduled on a running observer start immediately, so a
        # directory that cannot be watched fails on its own schedule call.
        observer = Observer()
        try:
            observer.start()
        except OSError as e:
            logger.warning("Credential watching disabled: %s", e)
            return
        self._observer = observer

        for directory, files in self._directories().items():
            accounts = [account for group in files.values() for account in group]
            if not directory.is_dir():
                logger.warning(
                    "Credentials directory %s does not exist, skipping watch", directory
                )
                continue
            handler = _CredentialEventHandler(self, dict(files))
            try:
                self._observer.schedule(handler, str(directory), recursive=False)
            except OSError as e:
                logger.warning("Cannot watch credentials directory %s: %s", directory, e)
                continue
            self.watched_accounts.update(accounts)
            logger.info("Watching credentials directory %s", directory)

    def notify_threadsafe(self, account: AccountId) -> None:
        """Enqueue a raw change from any thread; never blocks."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._raw.put_nowait, account)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    async def _debounce_loop(self) -> None:
        while True:
            first = await self._raw.get()
            await asyncio.sleep(self.debounce)

            changed = [first]
            while not self._raw.empty():
                account = self._raw.get_nowait()
                if account not in changed:
                    changed.append(account)

            for account in changed:
                logger.info("Credentials file changed for %s", account.value)
                self.changes.put_nowait(account)

    async def stop(self) -> None:
        """Stop the observer thread and the debounce task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)

    async def __aenter__(self) -> "CredentialWatcher":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
