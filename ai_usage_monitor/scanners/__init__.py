"""
Activity log scanners.

One scanner per log dialect, each producing normalized token usage events.
"""

from .base import LogScanner, ScanError
from .claude import ClaudeLogScanner
from .codex import CodexLogScanner

__all__ = ["LogScanner", "ScanError", "ClaudeLogScanner", "CodexLogScanner"]
