from __future__ import annotations

import asyncio
from typing import Optional, TypedDict
from urllib.parse import quote

import aiohttp
from loguru import logger

from ..errors import FatalConfiguration, TransientWriteFailure, map_status_error
from ..models import Document

CHARGE_HEADER = "x-request-charge"
PARTITION_HEADER = "x-partition-key"
RETRY_AFTER_MS_HEADER = "x-retry-after-ms"


class HttpStoreConfig(TypedDict, total=False):
    base_url: str
    collection: str
    api_key: str
    timeout_sec: float
    pool_max: int


DEFAULTS: HttpStoreConfig = {
    "timeout_sec": 30.0,
    "pool_max": 100,
}


def parse_retry_after(headers) -> Optional[float]:
    """Retry hint in seconds from ``x-retry-after-ms`` or ``Retry-After``."""
    raw_ms = headers.get(RETRY_AFTER_MS_HEADER)
    if raw_ms is not None:
        try:
            return max(0.0, float(raw_ms) / 1000.0)
        except ValueError:
            pass
    raw = headers.get("Retry-After")
    if raw is not None:
        try:
            return max(0.0, float(raw))
        except ValueError:
            return None
    return None


def parse_charge(headers, doc_id: str) -> float:
    raw = headers.get(CHARGE_HEADER)
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Unparseable {CHARGE_HEADER} {raw!r} writing {doc_id}; counting 0")
        return 0.0


class HttpDocumentStore:
    """Document store client over a REST API (one upsert per request).

    PUT {base_url}/collections/{collection}/docs/{id} with the partition key
    in ``x-partition-key``; the request charge comes back in
    ``x-request-charge``.
    """

    def __init__(self, cfg: HttpStoreConfig, *, session: Optional[aiohttp.ClientSession] = None):
        self.cfg: HttpStoreConfig = {**DEFAULTS, **(cfg or {})}
        if "base_url" not in self.cfg or "collection" not in self.cfg:
            raise FatalConfiguration("base_url and collection required")
        self._base = self.cfg["base_url"].rstrip("/")
        self._collection = quote(self.cfg["collection"], safe="")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"content-type": "application/json"}
            if self.cfg.get("api_key"):
                headers["authorization"] = f"Bearer {self.cfg['api_key']}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.cfg["timeout_sec"]),
                connector=aiohttp.TCPConnector(limit=self.cfg["pool_max"]),
            )
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "HttpDocumentStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ---------- writes

    async def write(self, document: Document, partition_key: str) -> float:
        session = await self._get_session()
        url = f"{self._base}/collections/{self._collection}/docs/{quote(document.id, safe='')}"
        try:
            async with session.put(
                url,
                data=document.canonical_json().encode("utf-8"),
                headers={PARTITION_HEADER: partition_key},
            ) as resp:
                if resp.status < 300:
                    return parse_charge(resp.headers, document.id)
                text = await resp.text()
                raise map_status_error(
                    resp.status,
                    f"HTTP {resp.status} writing {document.id}: {text[:200]}",
                    retry_after=parse_retry_after(resp.headers),
                )
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as exc:
            raise TransientWriteFailure(f"connection error writing {document.id}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransientWriteFailure(f"timeout writing {document.id}") from exc

    # ---------- admin

    async def read_provisioned_capacity(self) -> Optional[int]:
        """Provisioned RCU/s of the collection, or None if the store does not say."""
        session = await self._get_session()
        url = f"{self._base}/collections/{self._collection}/throughput"
        try:
            async with session.get(url) as resp:
                if resp.status == 404:
                    return None
                if resp.status in (401, 403):
                    raise FatalConfiguration(f"not authorized to read {url} (HTTP {resp.status})")
                if resp.status >= 300:
                    logger.warning(f"Reading throughput returned HTTP {resp.status}")
                    return None
                data = await resp.json()
        except aiohttp.ClientConnectionError as exc:
            raise FatalConfiguration(f"cannot connect to store at {self._base}: {exc}") from exc
        value = data.get("throughput") if isinstance(data, dict) else None
        return int(value) if value is not None else None
