"""
Cumulative-counter log scanner.

Codex writes session logs under sessions/YYYY/MM/DD/. Token records report
running totals for the session, so per-turn usage is recovered by diffing
consecutive readings within a file.
"""

import logging
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ai_usage_monitor.core.models import AccountId
from ai_usage_monitor.core.pricing import normalize_model_name
from ai_usage_monitor.core.token_counter import TokenUsageEvent

from .base import LogScanner, first_present, iter_json_lines, list_dir, token_count

logger = logging.getLogger(__name__)


def default_codex_roots() -> List[Path]:
    """$CODEX_HOME/sessions, or ~/.codex/sessions."""
    codex_home = os.environ.get("CODEX_HOME")
    if codex_home:
        return [Path(codex_home) / "sessions"]
    return [Path.home() / ".codex" / "sessions"]


@dataclass(frozen=True)
class TokenDelta:
    """Per-turn usage recovered from two cumulative readings."""
    input_tokens: int
    cached_tokens: int
    output_tokens: int


class CumulativeCounter:
    """Running totals for one session file.

    Diffs each new cumulative reading against the previous one. A reading
    smaller than its predecessor (counter reset, skewed replay) yields a
    zero delta for that category rather than a negative one.
    """

    def __init__(self):
        self.last_input = 0
        self.last_cached = 0
        self.last_output = 0

    def advance(self, input_total: int, cached_total: int, output_total: int) -> TokenDelta:
        """Record a new reading and return the usage since the previous one."""
        cached_total = min(cached_total, input_total)

        delta_input = max(input_total - self.last_input, 0)
        delta_cached = min(max(cached_total - self.last_cached, 0), delta_input)
        delta_output = max(output_total - self.last_output, 0)

        self.last_input = input_total
        self.last_cached = cached_total
        self.last_output = output_total

        return TokenDelta(
            input_tokens=delta_input,
            cached_tokens=delta_cached,
            output_tokens=delta_output,
        )


def _parse_component(path: Path) -> Optional[int]:
    name = path.name
    if not name.isdigit():
        return None
    return int(name)


def date_from_session_path(path: Path) -> Optional[date]:
    """Date from a .../YYYY/MM/DD/<file>.jsonl path."""
    parts = path.parts
    if len(parts) < 4:
        return None
    try:
        return date(int(parts[-4]), int(parts[-3]), int(parts[-2]))
    except ValueError:
        return None


class CodexLogScanner(LogScanner):
    """Scanner for date-partitioned cumulative-counter session logs."""

    account = AccountId.CODEX

    def __init__(self, roots: Optional[Sequence[Path]] = None):
        super().__init__(roots if roots is not None else default_codex_roots())

    def find_log_files(self, since: date, until: date) -> List[Path]:
        """Session files whose directory date lies in the window.

        Days outside the window are skipped without being listed.
        """
        files = []
        for root in self.existing_roots():
            for year_dir in list_dir(root):
                year = _parse_component(year_dir)
                if year is None or not year_dir.is_dir():
                    continue
                for month_dir in list_dir(year_dir):
                    month = _parse_component(month_dir)
                    if month is None or not month_dir.is_dir():
                        continue
                    for day_dir in list_dir(month_dir):
                        day = _parse_component(day_dir)
                        if day is None or not day_dir.is_dir():
                            continue
                        try:
                            day_date = date(year, month, day)
                        except ValueError:
                            continue
                        if not since <= day_date <= until:
                            continue
                        files.extend(
                            path for path in list_dir(day_dir) if path.suffix == ".jsonl"
                        )
        return files

    def parse_file(self, path: Path, file_date: date) -> List[TokenUsageEvent]:
        """Recover per-turn events from one session file.

        Raises:
            OSError: If the file cannot be read
        """
        counter = CumulativeCounter()
        current_model: Optional[str] = None
        events = []

        for record in iter_json_lines(path):
            record_type = record.get("type")
            payload = record.get("payload")
            if not isinstance(payload, dict):
                continue

            if record_type == "turn_context":
                model = payload.get("model")
                if isinstance(model, str) and model.strip():
                    current_model = normalize_model_name(model)
                continue

            if record_type != "event_msg" or payload.get("type") != "token_count":
                continue

            info = payload.get("info")
            if not isinstance(info, dict):
                continue
            totals = info.get("total_token_usage")
            if not isinstance(totals, dict):
                continue

            event = self._event_from_totals(counter, info, totals, current_model, file_date)
            if event is not None:
                events.append(event)

        return events

    def _event_from_totals(
        self,
        counter: CumulativeCounter,
        info: Dict[str, Any],
        totals: Dict[str, Any],
        current_model: Optional[str],
        file_date: date,
    ) -> Optional[TokenUsageEvent]:
        raw_model = first_present(info.get("model"), info.get("model_name"))
        if isinstance(raw_model, str) and raw_model.strip():
            model = normalize_model_name(raw_model)
        else:
            model = current_model or "unknown"

        delta = counter.advance(
            token_count(totals.get("input_tokens")),
            token_count(
                first_present(
                    totals.get("cached_input_tokens"),
                    totals.get("cache_read_input_tokens"),
                )
            ),
            token_count(totals.get("output_tokens")),
        )
        if delta.input_tokens == 0 and delta.output_tokens == 0:
            return None

        return TokenUsageEvent(
            date=file_date,
            model=model,
            input_tokens=max(delta.input_tokens - delta.cached_tokens, 0),
            output_tokens=delta.output_tokens,
            cache_read_tokens=delta.cached_tokens,
        )

    def scan(self, since: date, until: date) -> List[TokenUsageEvent]:
        files = self.find_log_files(since, until)
        logger.debug("Found %d Codex session files", len(files))

        events: List[TokenUsageEvent] = []
        for path in files:
            file_date = date_from_session_path(path) or since
            try:
                events.extend(self.parse_file(path, file_date))
            except OSError as e:
                logger.debug("Skipping unreadable session file %s: %s", path, e)
        return events
