"""HTTP client for the record service (the external persistence system)."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from case_governor.auth.request_context import RequestContext
from case_governor.clients.base import BaseServiceClient
from case_governor.context.gateway import WriteResult
from case_governor.models.records import EntityType
from case_governor.utils.resilience import record_read_retry

logger = logging.getLogger(__name__)


class RecordServiceClient(BaseServiceClient):
    """Async HTTP implementation of the RecordGateway protocol.

    Endpoints:
        GET   /api/v1/records/{entity_type}?ids=a,b,c  -> list of records
        PATCH /api/v1/records/{entity_type}            -> {"success": bool, "errors": [...]}

    Reads are retried on transport errors; writes are sent once.

    Usage:
        client = RecordServiceClient(base_url="http://record-service:8000")
        cases = await client.fetch(EntityType.CASE, ["500A"])
    """

    def __init__(
        self,
        base_url: str = "http://record-service:8000",
        timeout: float = 30.0,
        context: Optional[RequestContext] = None,
        **kwargs,
    ):
        """Initialize client.

        Args:
            base_url: Base URL of the record service
            timeout: Request timeout in seconds (default: 30.0)
            context: Caller identity forwarded as X-User-* headers
        """
        super().__init__(base_url=base_url, timeout=timeout, context=context, **kwargs)

    @record_read_retry
    async def fetch(self, entity_type: EntityType, ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Fetch the records that exist among ``ids``.

        Args:
            entity_type: Entity type to read
            ids: Record identifiers

        Returns:
            Raw record dicts; missing ids are absent

        Raises:
            AccessDeniedError: If the record service refuses the read
            PersistenceError: On any other non-success response
            httpx.TransportError: If the service stays unreachable after retries
        """
        if not ids:
            return []

        async with self._get_client() as client:
            response = await client.get(
                f"{self.base_url}/api/v1/records/{entity_type.value}",
                params={"ids": ",".join(ids)},
                headers=self._headers(),
            )

        # A bulk read reports missing ids by omission, so 404 means "none found"
        if response.status_code == 404:
            return []
        self._raise_for_status(response, entity_type.value)

        payload = response.json()
        records = payload.get("records", []) if isinstance(payload, dict) else payload
        logger.debug(f"Fetched {len(records)}/{len(ids)} {entity_type.value} records")
        return records

    async def write(self, entity_type: EntityType, patch: Dict[str, Any]) -> WriteResult:
        """Apply a partial update to one record.

        Args:
            entity_type: Entity type to write
            patch: Field values to change; must include "id"

        Returns:
            WriteResult reported by the record service
        """
        record_id = patch.get("id")
        async with self._get_client() as client:
            response = await client.patch(
                f"{self.base_url}/api/v1/records/{entity_type.value}",
                json=patch,
                headers=self._headers(),
            )

        if response.status_code == 422:
            body = response.json()
            return WriteResult(success=False, errors=list(body.get("errors", [])))
        self._raise_for_status(response, entity_type.value, record_id)

        body = response.json()
        return WriteResult(success=bool(body.get("success", True)), errors=list(body.get("errors", [])))
