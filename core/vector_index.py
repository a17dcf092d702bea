"""
Vector index collaborator port.

The engine only ever calls ``store``, ``search`` and ``delete``. Every call may
fail; implementations raise ``DependencyDegraded`` and callers decide whether to
tombstone, skip, or ignore.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

import httpx

import core.config as config
from core.errors import DependencyDegraded

logger = config.logger


class VectorCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


class VectorIndex:
    name = "abstract"

    def store(self, record: dict) -> None:
        raise NotImplementedError

    def search(self, query: str, tenant_id: str, limit: int = 20) -> list[dict]:
        raise NotImplementedError

    def delete(self, external_id: str) -> None:
        raise NotImplementedError

    def status(self) -> dict:
        return {"backend": self.name}

    def close(self) -> None:
        return None


class NullVectorIndex(VectorIndex):
    """Used when no vector backend is configured; every call succeeds as a no-op."""

    name = "none"

    def store(self, record: dict) -> None:
        return None

    def search(self, query: str, tenant_id: str, limit: int = 20) -> list[dict]:
        return []

    def delete(self, external_id: str) -> None:
        return None


class WeaviateVectorIndex(VectorIndex):
    """Weaviate REST client with a bounded timeout and a circuit breaker."""

    name = "weaviate"

    def __init__(
        self,
        base_url: str,
        class_name: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        breaker: Optional[VectorCircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._class_name = class_name
        self._breaker = breaker or VectorCircuitBreaker(
            failure_threshold=config.VECTOR_FAILURE_THRESHOLD,
            cooldown_seconds=config.VECTOR_COOLDOWN_SECONDS,
        )
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            headers=headers,
            transport=transport,
        )

    def _request(self, method: str, path: str, ok_statuses: tuple[int, ...] = (), **kwargs) -> httpx.Response:
        if self._breaker.is_open():
            raise DependencyDegraded("vector index circuit breaker open")
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            self._breaker.record_failure(str(exc))
            raise DependencyDegraded(f"vector index request failed: {exc}") from exc
        if response.status_code >= 400 and response.status_code not in ok_statuses:
            self._breaker.record_failure(f"status {response.status_code}")
            raise DependencyDegraded(f"vector index returned status {response.status_code}")
        self._breaker.record_success()
        return response

    def store(self, record: dict) -> None:
        self._request(
            "PUT",
            f"/v1/objects/{self._class_name}/{record['id']}",
            json={
                "class": self._class_name,
                "id": record["id"],
                "properties": {
                    "tenantId": record.get("tenantId"),
                    "memoryType": record.get("memoryType"),
                    "name": record.get("name"),
                    "text": record.get("text"),
                },
            },
        )

    def search(self, query: str, tenant_id: str, limit: int = 20) -> list[dict]:
        graphql = {
            "query": (
                "query($q: String!, $tenant: String!, $limit: Int!) {"
                f" Get {{ {self._class_name}("
                " bm25: {query: $q},"
                ' where: {path: ["tenantId"], operator: Equal, valueText: $tenant},'
                " limit: $limit"
                ") { name memoryType _additional { id score } } } }"
            ),
            "variables": {"q": query, "tenant": tenant_id, "limit": limit},
        }
        response = self._request("POST", "/v1/graphql", json=graphql)
        data = response.json() or {}
        hits = ((data.get("data") or {}).get("Get") or {}).get(self._class_name) or []
        results = []
        for hit in hits:
            additional = hit.get("_additional") or {}
            results.append(
                {
                    "id": additional.get("id"),
                    "name": hit.get("name"),
                    "memoryType": hit.get("memoryType"),
                    "score": additional.get("score"),
                }
            )
        return results

    def delete(self, external_id: str) -> None:
        # Already gone counts as deleted.
        self._request("DELETE", f"/v1/objects/{self._class_name}/{external_id}", ok_statuses=(404,))

    def status(self) -> dict:
        return {"backend": self.name, "circuit_breaker": self._breaker.status()}

    def close(self) -> None:
        self._client.close()
        logger.info("Vector index client closed")


def build_vector_index_from_config() -> VectorIndex:
    if config.VECTOR_BACKEND == "weaviate" and config.VECTOR_INDEX_URL:
        return WeaviateVectorIndex(
            base_url=config.VECTOR_INDEX_URL,
            class_name=config.VECTOR_INDEX_CLASS,
            api_key=config.VECTOR_INDEX_API_KEY,
            timeout_seconds=config.VECTOR_INDEX_TIMEOUT_SECONDS,
        )
    return NullVectorIndex()


_vector_index: Optional[VectorIndex] = None


def get_vector_index() -> VectorIndex:
    global _vector_index
    if _vector_index is None:
        _vector_index = build_vector_index_from_config()
    return _vector_index


def set_vector_index(index: Optional[VectorIndex]) -> Optional[VectorIndex]:
    global _vector_index
    previous = _vector_index
    _vector_index = index
    return previous


def close_vector_index() -> None:
    global _vector_index
    if _vector_index is not None:
        _vector_index.close()
        _vector_index = None
