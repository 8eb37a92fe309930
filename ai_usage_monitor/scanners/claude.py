"""
Session-transcript log scanner.

Claude Code writes one JSONL transcript per session under its projects
directory. Each assistant record carries independent per-turn token counts.
"""

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from ai_usage_monitor.core.models import AccountId
from ai_usage_monitor.core.pricing import normalize_model_name
from ai_usage_monitor.core.token_counter import TokenUsageEvent

from .base import LogScanner, iter_json_lines, token_count, walk_files

logger = logging.getLogger(__name__)


def default_claude_roots() -> List[Path]:
    """Standard transcript locations: ~/.claude/projects and $XDG_CONFIG_HOME/claude/projects."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    config_dir = Path(config_home) if config_home else Path.home() / ".config"
    return [
        Path.home() / ".claude" / "projects",
        config_dir / "claude" / "projects",
    ]


def parse_timestamp(raw: Any) -> Optional[date]:
    """Local calendar date of an RFC 3339 timestamp, or None if unparseable."""
    if not isinstance(raw, str) or not raw:
        return None
    text = raw.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.date()
    return parsed.astimezone().date()


def date_from_file_name(path: Path) -> Optional[date]:
    """Date encoded as YYYY-MM-DD in a file stem, if any."""
    try:
        return datetime.strptime(path.stem, "%Y-%m-%d").date()
    except ValueError:
        return None


def dedup_key(record: Dict[str, Any], message: Dict[str, Any]) -> Optional[str]:
    """Composite message/request key, only when both ids are present."""
    message_id = message.get("id")
    request_id = record.get("requestId")
    if isinstance(message_id, str) and message_id and isinstance(request_id, str) and request_id:
        return f"{message_id}:{request_id}"
    return None


class ClaudeLogScanner(LogScanner):
    """Scanner for per-session transcript logs."""

    account = AccountId.CLAUDE

    def __init__(self, roots: Optional[Sequence[Path]] = None):
        super().__init__(roots if roots is not None else default_claude_roots())

    def find_log_files(self, since: date, until: date) -> List[Path]:
        """All transcripts that may hold records in the window.

        Files named by date are filtered by name; session files are always
        included and filtered per record.
        """
        files = []
        for root in self.existing_roots():
            for path in walk_files(root, ".jsonl"):
                file_date = date_from_file_name(path)
                if file_date is not None and not since <= file_date <= until:
                    continue
                files.append(path)
        return files

    def parse_record(
        self, record: Dict[str, Any], since: date, until: date
    ) -> Optional[TokenUsageEvent]:
        """Convert one transcript record, or None if it carries no usage in the window."""
        if record.get("type") != "assistant":
            return None

        message = record.get("message")
        if not isinstance(message, dict):
            return None
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return None

        record_date = parse_timestamp(record.get("timestamp"))
        if record_date is None or not since <= record_date <= until:
            return None

        model = message.get("model")
        if not isinstance(model, str) or not model.strip():
            model = "unknown"

        return TokenUsageEvent(
            date=record_date,
            model=normalize_model_name(model),
            input_tokens=token_count(usage.get("input_tokens")),
            output_tokens=token_count(usage.get("output_tokens")),
            cache_write_tokens=token_count(usage.get("cache_creation_input_tokens")),
            cache_read_tokens=token_count(usage.get("cache_read_input_tokens")),
        )

    def scan(self, since: date, until: date) -> List[TokenUsageEvent]:
        files = self.find_log_files(since, until)
        logger.debug("Found %d Claude transcript files", len(files))

        events: List[TokenUsageEvent] = []
        seen: Set[str] = set()
        for path in files:
            try:
                for record in iter_json_lines(path):
                    event = self.parse_record(record, since, until)
                    if event is None:
                        continue
                    key = dedup_key(record, record["message"])
                    if key is not None:
                        if key in seen:
                            continue
                        seen.add(key)
                    events.append(event)
            except OSError as e:
                logger.debug("Skipping unreadable transcript %s: %s", path, e)
        return events
