"""Secondary store backed by a Supabase / PostgREST endpoint."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

from planforge.shared_kernel.exceptions import SecondaryStoreError
from .interfaces import Row, SecondaryStore

logger = structlog.get_logger(__name__)


class PostgrestSecondaryStore(SecondaryStore):
    """Each collection maps to a PostgREST table under ``/rest/v1``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, collection: str) -> str:
        return f"{self.base_url}/rest/v1/{collection}"

    async def _request(
        self,
        method: str,
        collection: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                self._url(collection),
                params=params,
                json=json,
                headers={**self._headers, **(headers or {})},
            )
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise SecondaryStoreError(
                f"{method} {collection} failed with {exc.response.status_code}",
                code="SECONDARY_STORE_HTTP_ERROR",
                details={"collection": collection, "status": exc.response.status_code, "body": exc.response.text},
            ) from exc
        except httpx.HTTPError as exc:
            raise SecondaryStoreError(
                f"{method} {collection} failed: {exc}",
                code="SECONDARY_STORE_UNAVAILABLE",
                details={"collection": collection},
            ) from exc

    async def upsert(self, collection: str, key: str, doc: Row) -> None:
        await self._request(
            "POST",
            collection,
            params={"on_conflict": "id"},
            json={**doc, "id": key},
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def delete(self, collection: str, key: str) -> None:
        await self._request("DELETE", collection, params={"id": f"eq.{key}"})

    async def find_by_id(self, collection: str, key: str) -> Optional[Row]:
        response = await self._request("GET", collection, params={"id": f"eq.{key}", "select": "*"})
        rows = response.json()
        return rows[0] if rows else None

    async def find_by_project(self, collection: str, project_id: str) -> List[Row]:
        response = await self._request(
            "GET",
            collection,
            params={"project_id": f"eq.{project_id}", "select": "*"},
        )
        return list(response.json())

    async def close(self) -> None:
        await self._client.aclose()
