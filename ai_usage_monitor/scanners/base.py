"""
Activity log scanning interface.

A scanner walks one account family's local log tree and converts its raw
records into normalized token usage events.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ai_usage_monitor.core.models import AccountId
from ai_usage_monitor.core.token_counter import TokenUsageEvent

logger = logging.getLogger(__name__)


class ScanError(Exception):
    """Raised when a log tree cannot be traversed."""


class LogScanner(ABC):
    """Stateless scanner over one or more configured root directories."""

    account: AccountId

    def __init__(self, roots: Sequence[Path]):
        self.roots: List[Path] = [Path(root).expanduser() for root in roots]

    @abstractmethod
    def scan(self, since: date, until: date) -> List[TokenUsageEvent]:
        """Parse every log record dated within [since, until].

        Args:
            since: First day of the window (inclusive, local time)
            until: Last day of the window (inclusive, local time)

        Returns:
            Token usage events in file order

        Raises:
            ScanError: If an existing root cannot be traversed
        """

    def existing_roots(self) -> List[Path]:
        """Configured roots that exist; missing roots mean no activity yet."""
        roots = []
        for root in self.roots:
            if root.is_dir():
                roots.append(root)
            else:
                logger.debug("Log root %s does not exist, skipping", root)
        return roots


def list_dir(path: Path) -> List[Path]:
    """Sorted directory entries.

    Raises:
        ScanError: If the directory cannot be listed
    """
    try:
        return sorted(Path(entry.path) for entry in os.scandir(path))
    except OSError as e:
        raise ScanError(f"Cannot read log directory {path}: {e}") from e


def walk_files(root: Path, suffix: str) -> List[Path]:
    """Recursively collect files with the given suffix under root.

    Raises:
        ScanError: If any directory in the tree cannot be listed
    """
    files = []
    pending = [root]
    while pending:
        directory = pending.pop()
        for entry in list_dir(directory):
            if entry.is_dir():
                pending.append(entry)
            elif entry.suffix == suffix:
                files.append(entry)
    return sorted(files)


def iter_json_lines(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield JSON objects from a JSONL file, skipping malformed lines.

    Partially written trailing lines are common while the producing tool is
    still running and are skipped like any other malformed line.

    Raises:
        OSError: If the file cannot be opened
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError as e:
                logger.debug("Skipping malformed line %s:%d: %s", path, line_number, e)
                continue
            if isinstance(record, dict):
                yield record


def token_count(value: Any) -> int:
    """Coerce a raw token field to a non-negative int (missing or invalid is 0)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def first_present(*values: Optional[Any]) -> Optional[Any]:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None
