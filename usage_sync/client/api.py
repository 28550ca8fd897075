"""
HTTP client for the reconciliation server.

Both calls use bounded timeouts. Fetching fingerprints degrades gracefully
(None means "unknown server state"); submitting raises on every failure.
"""

from typing import Any, Dict, Optional

import httpx

from usage_sync.client.credentials import Credentials
from usage_sync.core.hasher import FingerprintTable
from usage_sync.errors import AuthenticationError, NetworkError, SubmissionError, ValidationError
from usage_sync.logging import get_logger

logger = get_logger(__name__)

CHECKSUM_PATH = "/api/submit/checksum"
SUBMIT_PATH = "/api/submit"


class UsageSyncClient:
    """Talks to the fingerprint and submission endpoints."""

    def __init__(
        self,
        base_url: str,
        credentials: Credentials,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Server root, e.g. ``https://usage.example.com``
            credentials: Bearer credentials for every request
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a mock)
        """
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {credentials.token}"},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def fetch_fingerprints(self) -> Optional[FingerprintTable]:
        """Fetch the server's fingerprint table.

        Returns:
            The table (possibly empty), or None when the server could not be
            reached or answered with anything but a well-formed 200
        """
        try:
            response = self._http.get(CHECKSUM_PATH)
        except httpx.HTTPError as e:
            logger.warning("fingerprint_fetch_failed", error=str(e))
            return None

        if response.status_code != 200:
            logger.warning("fingerprint_fetch_failed", status_code=response.status_code)
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("fingerprint_fetch_failed", error="invalid JSON")
            return None

        if not _is_fingerprint_table(data):
            logger.warning("fingerprint_fetch_failed", error="unexpected response shape")
            return None
        return data

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a submission payload.

        Returns:
            The decoded success response

        Raises:
            NetworkError: If the server cannot be reached or times out
            AuthenticationError: On HTTP 401
            ValidationError: On HTTP 400, with the server's itemized details
            SubmissionError: On any other non-2xx answer
        """
        try:
            response = self._http.post(SUBMIT_PATH, json=payload)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to connect to server: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code == 401:
            raise AuthenticationError(body.get("error") or "Authentication failed")
        if response.status_code == 400:
            raise ValidationError(body.get("error") or "Submission rejected", body.get("details"))
        if not response.is_success:
            raise SubmissionError(response.status_code, body.get("error") or "Submission failed", body.get("details"))
        return body


def _is_fingerprint_table(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    for sources in data.values():
        if not isinstance(sources, dict):
            return False
        if not all(isinstance(value, str) for value in sources.values()):
            return False
    return True
