"""
Usage providers.

One account-fetch collaborator per assistant family, resolved through the
registry.
"""

from .base import CredentialError, FetchError, UsageProvider
from .claude import ClaudeProvider
from .codex import CodexProvider
from .registry import ProviderRegistry, build_scanners

__all__ = [
    "CredentialError",
    "FetchError",
    "UsageProvider",
    "ClaudeProvider",
    "CodexProvider",
    "ProviderRegistry",
    "build_scanners",
]
