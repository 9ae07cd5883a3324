"""Base service client for calls across the persistence boundary."""

import logging
from typing import Optional

import httpx

from case_governor.auth.request_context import CORRELATION_ID_HEADER, RequestContext
from case_governor.errors import AccessDeniedError, NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


class BaseServiceClient:
    """Base class for internal service-to-service HTTP clients.

    Caller identity is propagated via X-User-* headers. Responses are mapped
    onto the governor's error taxonomy: 404 -> NotFoundError,
    401/403 -> AccessDeniedError, any other failure -> PersistenceError.
    Transport errors are left as httpx.TransportError so retry policies can
    recognise them.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        context: Optional[RequestContext] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize service client.

        Args:
            base_url: Service base URL (e.g., http://record-service:8000)
            timeout: Request timeout in seconds (default: 30.0)
            context: Caller identity forwarded on every request
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.context = context or RequestContext.system()
        self.transport = transport

        logger.info(f"Initialized {self.__class__.__name__} with base_url={base_url}")

    def _headers(self, correlation_id: Optional[str] = None) -> dict:
        """Generate request headers from the caller context."""
        headers = {"Content-Type": "application/json", **self.context.to_headers()}
        if correlation_id:
            headers[CORRELATION_ID_HEADER] = correlation_id
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client instance with configured timeout.

        Returns:
            Configured AsyncClient ready for use with async context manager
        """
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _raise_for_status(
        response: httpx.Response, entity_type: str, record_id: Optional[str] = None
    ) -> None:
        """Translate an HTTP error response into a governor error."""
        if response.is_success:
            return
        if response.status_code == 404:
            raise NotFoundError(entity_type, record_id or "?")
        if response.status_code in (401, 403):
            # Body may echo field values; never attach it
            raise AccessDeniedError(entity_type, record_id)
        raise PersistenceError(
            f"Record service returned {response.status_code} for {entity_type}",
            details={"status_code": response.status_code},
        )
