"""
Base Channel Adapter
====================

Abstract base class defining the pull interface for all platform adapters.
Each adapter downloads one connection's calendar and returns it as a list of
normalized external events plus per-event warnings.

Connection-level failures are raised as ``AdapterError`` subclasses:
- TransportError: network, timeout, 429 or 5xx (retry on the next tick)
- AuthorizationError: 401/403 or missing credentials (operator must fix)
- MalformedResponseError: the payload could not be understood
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..models import Connection, ExternalEvent, ParseWarning, Platform

logger = structlog.get_logger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class FetchResult:
    """Events and per-event warnings produced by one fetch."""
    events: List[ExternalEvent] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AdapterError(Exception):
    """Base exception for channel adapter errors."""

    kind = "adapter"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class TransportError(AdapterError):
    """Network failure, timeout, throttling or server error."""
    kind = "transport"
    retryable = True


class AuthorizationError(AdapterError):
    """Raised when authentication fails (401, 403) or credentials are missing."""
    kind = "authorization"


class MalformedResponseError(AdapterError):
    """Raised when the platform answered with something we cannot parse."""
    kind = "malformed_response"


# =============================================================================
# ADAPTER BASE
# =============================================================================

class ChannelAdapter(ABC):
    """
    Abstract base class for all platform adapters.

    Adapters should handle:
    - Platform-specific wire formats
    - Error translation into the AdapterError taxonomy
    - Mapping platform status vocabularies onto EventStatus
    """

    def __init__(
        self,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the adapter.

        Args:
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def platform(self) -> Optional[Platform]:
        """Platform served by this adapter, or None for platform-agnostic feeds."""
        pass

    @property
    def base_url(self) -> str:
        return ""

    @property
    def headers(self) -> Dict[str, str]:
        """Return default headers for requests."""
        return {"Accept": "application/json"}

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @abstractmethod
    async def fetch(self, connection: Connection) -> FetchResult:
        """
        Download and normalize the connection's external calendar.

        Args:
            connection: The connection to fetch

        Returns:
            FetchResult with events and per-event warnings

        Raises:
            TransportError: On network failures, timeouts, 429 or 5xx
            AuthorizationError: On 401/403 or missing credentials
            MalformedResponseError: On payloads that cannot be parsed
        """
        pass

    # =========================================================================
    # HELPER METHODS - Shared across adapters
    # =========================================================================

    @staticmethod
    def raise_for_status(response: httpx.Response, endpoint: str) -> None:
        """Translate HTTP error statuses into adapter errors."""
        status_code = response.status_code
        if status_code < 400:
            return

        body = response.text[:500] if response.is_closed else None

        if status_code == 401:
            raise AuthorizationError(
                "Authentication failed - credentials rejected",
                status_code=401,
                response_body=body
            )
        if status_code == 403:
            raise AuthorizationError(
                "Access forbidden - insufficient permissions",
                status_code=403,
                response_body=body
            )
        if status_code == 429:
            raise TransportError(
                "Rate limit exceeded",
                status_code=429,
                response_body=body
            )
        if status_code >= 500:
            raise TransportError(
                f"Server error: {status_code}",
                status_code=status_code,
                response_body=body
            )
        raise MalformedResponseError(
            f"Unexpected response {status_code} from {endpoint}",
            status_code=status_code,
            response_body=body
        )

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        """
        Make an HTTP request with error handling.

        Args:
            method: HTTP method
            endpoint: Endpoint relative to base_url, or an absolute URL
            params: Query parameters
            headers: Extra headers for this request

        Returns:
            httpx.Response

        Raises:
            AdapterError: On transport or HTTP errors
        """
        client = await self.get_client()

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                params=params,
                headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}")
        except httpx.RequestError as e:
            logger.error(
                "HTTP request failed",
                platform=self.platform.value if self.platform else None,
                endpoint=endpoint,
                error=str(e)
            )
            raise TransportError(f"Request failed: {e}")

        self.raise_for_status(response, endpoint)
        return response

    def _log_fetch(self, connection: Connection, result: FetchResult, **kwargs):
        """Log the outcome of a fetch."""
        logger.info(
            "Fetched external calendar",
            connection_id=connection.id,
            platform=connection.platform.value,
            events=len(result.events),
            warnings=len(result.warnings),
            **kwargs
        )
