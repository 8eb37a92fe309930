"""
Account-fetch collaborator interface.

A provider reads one account's credential file and fetches its current
quota windows from the vendor's usage endpoint.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from ai_usage_monitor.core.models import AccountId, UsageSnapshot

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0
USER_AGENT = "ai-usage-monitor"


class FetchError(Exception):
    """Transient failure fetching usage (network, HTTP status, bad payload)."""


class CredentialError(FetchError):
    """Credentials are missing, unparseable, expired or rejected.

    The message is a fixed, human-readable hint rather than the raw error.
    """


def clamp_fraction(value: float) -> float:
    """Clamp a used fraction into 0.0..1.0; vendors occasionally report overage."""
    return min(max(value, 0.0), 1.0)


def as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class UsageProvider(ABC):
    """One account's usage source.

    Subclasses define the credential format and the response mapping; the
    shared HTTP plumbing here turns transport and status failures into
    FetchError / CredentialError.
    """

    account: AccountId
    name: str = ""
    credential_hint: str = ""

    def __init__(
        self,
        credentials_path: Path,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize provider.

        Args:
            credentials_path: Credential file owned by the vendor's CLI
            timeout: Per-request timeout in seconds
            client: Optional shared HTTP client (used as-is, not closed)
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.credentials_path = Path(credentials_path).expanduser()
        self.timeout = timeout
        self.client = client

    @property
    def dashboard_url(self) -> str:
        return self.account.dashboard_url

    def credential_error_hint(self) -> str:
        return self.credential_hint

    def has_valid_credentials(self) -> bool:
        """Whether a fetch could be attempted without a guaranteed credential failure."""
        try:
            self.load_credentials()
        except CredentialError:
            return False
        return True

    @abstractmethod
    def load_credentials(self) -> Any:
        """Read and validate the credential file.

        Raises:
            CredentialError: If the file is missing, malformed or expired
        """

    @abstractmethod
    async def fetch_usage(self) -> UsageSnapshot:
        """Fetch the account's current quota state.

        Raises:
            CredentialError: If credentials are unusable or rejected
            FetchError: On any other failure
        """

    def _read_credentials_file(self) -> Dict[str, Any]:
        try:
            with open(self.credentials_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise CredentialError(
                f"{self.name} credentials not found. {self.credential_hint}."
            )
        except (OSError, ValueError) as e:
            logger.debug("Cannot read %s: %s", self.credentials_path, e)
            raise CredentialError(
                f"{self.name} credentials are unreadable. {self.credential_hint}."
            )
        if not isinstance(data, dict):
            raise CredentialError(
                f"{self.name} credentials are malformed. {self.credential_hint}."
            )
        return data

    async def _get_json(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        """GET a JSON object from the vendor endpoint.

        Raises:
            CredentialError: On a status the subclass maps to a credential problem
            FetchError: On network failure, other error statuses or a non-object body
        """
        request_headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        request_headers.update(headers)

        logger.debug("Fetching %s usage from %s", self.name, url)
        owns_client = self.client is None
        http = self.client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await http.get(url, headers=request_headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {self.name} usage: {e}") from e
        finally:
            if owns_client:
                await http.aclose()

        if response.status_code >= 400:
            self._raise_for_status(response)
            raise FetchError(
                f"{self.name} API error: {response.status_code} - {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"Failed to parse {self.name} usage response: {e}") from e
        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected {self.name} usage response")
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Hook for vendor-specific status handling; raise to override the generic error."""
