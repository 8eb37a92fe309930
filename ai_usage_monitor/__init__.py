"""
AI Usage Monitor.

Tracks subscription quota windows and log-derived spend for Claude Code
and Codex.
"""

__version__ = "0.1.0"
