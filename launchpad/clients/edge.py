"""Edge routing adapter (Cloudflare KV, DNS and custom hostnames).

Platform subdomains are served by a worker that looks the slug up in a KV
namespace, so mapping a subdomain is a single KV write: ``slug -> target URL``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from ..errors import LaunchpadError, RemoteServiceError
from ..resilience import CircuitBreaker, RetryPolicy
from .base import HTTPAdapter

logger = structlog.get_logger(__name__)


class EdgeRouter(ABC):
    @abstractmethod
    async def put_mapping(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def get_mapping(self, key: str) -> str | None: ...

    @abstractmethod
    async def delete_mapping(self, key: str) -> None: ...

    @abstractmethod
    async def create_dns_record(
        self, record_type: str, name: str, content: str, proxied: bool = True
    ) -> dict[str, Any]: ...

    @abstractmethod
    async def delete_dns_record(self, record_id: str) -> None: ...

    @abstractmethod
    async def create_custom_hostname(self, hostname: str) -> dict[str, Any]: ...

    @abstractmethod
    async def get_custom_hostname(self, hostname_id: str) -> dict[str, Any]: ...

    @abstractmethod
    async def delete_custom_hostname(self, hostname_id: str) -> None: ...


def _is_not_found(error: httpx.HTTPStatusError) -> bool:
    return error.response.status_code == httpx.codes.NOT_FOUND


class CloudflareClient(HTTPAdapter, EdgeRouter):
    def __init__(
        self,
        api_url: str,
        api_token: str,
        account_id: str = "",
        zone_id: str = "",
        kv_namespace_id: str = "",
        timeout: float = 15.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            api_url,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout,
            breaker=breaker,
            retry=retry,
            transport=transport,
        )
        self.account_id = account_id
        self.zone_id = zone_id
        self.kv_namespace_id = kv_namespace_id

    @property
    def kv_configured(self) -> bool:
        return bool(self.account_id and self.kv_namespace_id)

    def _kv_path(self, key: str) -> str:
        return (
            f"/accounts/{self.account_id}/storage/kv/namespaces/"
            f"{self.kv_namespace_id}/values/{quote(key, safe='')}"
        )

    def _zone_path(self, suffix: str) -> str:
        if not self.zone_id:
            raise LaunchpadError("CLOUDFLARE_ZONE_ID not configured")
        return f"/zones/{self.zone_id}/{suffix}"

    async def _request_once(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        content: str | None = None,
        raw: bool = False,
    ) -> Any:
        client = await self._get_client()
        headers = {"Content-Type": "text/plain"} if content is not None else None
        resp = await client.request(method, path, json=json, content=content, headers=headers)
        resp.raise_for_status()
        if raw:
            return resp.text
        body = resp.json() if resp.content else {}
        if isinstance(body, dict) and body.get("success") is False and body.get("errors"):
            message = "; ".join(e.get("message", "unknown error") for e in body["errors"])
            raise RemoteServiceError(f"Cloudflare API error: {message}")
        return body

    async def _api(self, name: str, method: str, path: str, **kwargs: Any) -> Any:
        return await self._call(name, self._request_once, method, path, **kwargs)

    # === KV ===

    async def put_mapping(self, key: str, value: str) -> None:
        if not self.kv_configured:
            logger.warning("edge_kv_not_configured", operation="put", key=key)
            return
        await self._api("cloudflare-kv-put", "PUT", self._kv_path(key), content=value)
        logger.info("edge_mapping_written", key=key, target=value)

    async def get_mapping(self, key: str) -> str | None:
        if not self.kv_configured:
            return None
        try:
            return await self._api("cloudflare-kv-get", "GET", self._kv_path(key), raw=True)
        except httpx.HTTPStatusError as e:
            if _is_not_found(e):
                return None
            raise

    async def delete_mapping(self, key: str) -> None:
        if not self.kv_configured:
            logger.warning("edge_kv_not_configured", operation="delete", key=key)
            return
        try:
            await self._api("cloudflare-kv-delete", "DELETE", self._kv_path(key))
        except httpx.HTTPStatusError as e:
            if not _is_not_found(e):
                raise
            logger.info("edge_mapping_already_deleted", key=key)
            return
        logger.info("edge_mapping_deleted", key=key)

    # === DNS ===

    async def create_dns_record(
        self, record_type: str, name: str, content: str, proxied: bool = True
    ) -> dict[str, Any]:
        body = await self._api(
            "cloudflare-api",
            "POST",
            self._zone_path("dns_records"),
            json={
                "type": record_type,
                "name": name,
                "content": content,
                "proxied": proxied,
                "ttl": 1 if proxied else 300,
            },
        )
        record = body["result"]
        logger.info("dns_record_created", record_id=record.get("id"), name=name)
        return record

    async def delete_dns_record(self, record_id: str) -> None:
        try:
            await self._api("cloudflare-api", "DELETE", self._zone_path(f"dns_records/{record_id}"))
        except httpx.HTTPStatusError as e:
            if not _is_not_found(e):
                raise
            logger.info("dns_record_already_deleted", record_id=record_id)

    # === Custom hostnames ===

    async def create_custom_hostname(self, hostname: str) -> dict[str, Any]:
        body = await self._api(
            "cloudflare-api",
            "POST",
            self._zone_path("custom_hostnames"),
            json={
                "hostname": hostname,
                "ssl": {"method": "http", "type": "dv", "settings": {"min_tls_version": "1.2"}},
            },
        )
        result = body["result"]
        logger.info(
            "custom_hostname_created",
            hostname_id=result.get("id"),
            hostname=hostname,
            ssl_status=(result.get("ssl") or {}).get("status"),
        )
        return result

    async def get_custom_hostname(self, hostname_id: str) -> dict[str, Any]:
        body = await self._api("cloudflare-api", "GET", self._zone_path(f"custom_hostnames/{hostname_id}"))
        return body["result"]

    async def delete_custom_hostname(self, hostname_id: str) -> None:
        try:
            await self._api("cloudflare-api", "DELETE", self._zone_path(f"custom_hostnames/{hostname_id}"))
        except httpx.HTTPStatusError as e:
            if not _is_not_found(e):
                raise
            logger.info("custom_hostname_already_deleted", hostname_id=hostname_id)
