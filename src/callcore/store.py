import httpx
import logging
from typing import Optional

from callcore.circuit_breaker import CircuitBreaker
from callcore.errors import SessionStoreUnavailable

logger = logging.getLogger(__name__)


class DocumentStore:
    """HTTP client for the durable document store (the source of truth).

    Documents are JSON objects addressed by (tenant_id, key). A missing
    document is ``None``; a transport or server error raises
    ``SessionStoreUnavailable`` so the caller decides how to degrade.
    After 3 consecutive failures calls are skipped for 30s.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="document store",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        """Close the shared HTTP client. Call at shutdown."""
        await self._client.aclose()

    def _path(self, tenant_id: str, key: str) -> str:
        return f"/documents/{tenant_id}/{key}"

    async def get(self, tenant_id: str, key: str) -> Optional[dict]:
        if not self._circuit.should_try():
            raise SessionStoreUnavailable("document store circuit open")
        try:
            resp = await self._client.get(self._path(tenant_id, key))
            if resp.status_code == 404:
                self._circuit.record_success()
                return None
            resp.raise_for_status()
            self._circuit.record_success()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            self._circuit.record_failure()
            logger.error("document get %s/%s failed: %s", tenant_id, key, e)
            raise SessionStoreUnavailable(f"document get failed: {e}") from e

    async def put(self, tenant_id: str, key: str, document: dict) -> None:
        if not self._circuit.should_try():
            raise SessionStoreUnavailable("document store circuit open")
        try:
            resp = await self._client.put(self._path(tenant_id, key), json=document)
            resp.raise_for_status()
            self._circuit.record_success()
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            logger.error("document put %s/%s failed: %s", tenant_id, key, e)
            raise SessionStoreUnavailable(f"document put failed: {e}") from e
