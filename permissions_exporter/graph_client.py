import os
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional

import requests

from permissions_exporter.auth import TokenProvider
from permissions_exporter.runtime_logger import emit


DEFAULT_GRAPH_BASE = "https://graph.microsoft.com/v1.0"
RETRYABLE_STATUSES = (408, 429, 500, 502, 503, 504)
THROTTLED_STATUS = 429
PAGE_SIZE = 999

PERMISSION_SELECT = ",".join(
    [
        "id",
        "roles",
        "inheritedFrom",
        "grantedToV2",
        "grantedToIdentitiesV2",
    ]
)


@dataclass(frozen=True)
class GraphError(Exception):
    status_code: int
    message: str
    url: str
    response_text: str = ""
    retry_after: Optional[float] = None

    @property
    def is_throttled(self) -> bool:
        return self.status_code == THROTTLED_STATUS

    def __str__(self) -> str:
        return f"Graph error {self.status_code}: {self.message}"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    value = str(value).strip()
    if value.isdigit():
        return float(value)
    return None


def _error_from_response(resp: requests.Response, url: str) -> GraphError:
    text = resp.text or ""
    message = text[:400] if text else "request_failed"
    return GraphError(
        resp.status_code,
        message,
        url,
        text,
        parse_retry_after(resp.headers.get("Retry-After")),
    )


class GraphClient:
    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        graph_base: Optional[str] = None,
        max_retries: Optional[int] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self._graph_base = (graph_base or os.getenv("GRAPH_BASE", DEFAULT_GRAPH_BASE)).rstrip("/")
        self._tokens = token_provider
        self._max_retries = max_retries if max_retries is not None else int(os.getenv("GRAPH_MAX_RETRIES", "5"))
        self._connect_timeout = (
            connect_timeout if connect_timeout is not None else float(os.getenv("GRAPH_CONNECT_TIMEOUT", "10"))
        )
        self._read_timeout = read_timeout if read_timeout is not None else float(os.getenv("GRAPH_READ_TIMEOUT", "60"))
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._graph_base

    def _build_url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = "/" + path_or_url
        return f"{self._graph_base}{path_or_url}"

    def _send(self, method: str, url: str, *, json: Any = None) -> requests.Response:
        headers = {"Authorization": f"Bearer {self._tokens.get_token()}"}
        return self._session.request(
            method,
            url,
            headers=headers,
            json=json,
            timeout=(self._connect_timeout, self._read_timeout),
        )

    @staticmethod
    def _decode(resp: requests.Response, method: str, url: str) -> Dict[str, Any]:
        if resp.status_code == 204:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            emit("ERROR", "GRAPH", f"Graph response invalid JSON: method={method} url={url}")
            raise RuntimeError("Graph response was not valid JSON") from exc

    def get_json(self, path_or_url: str) -> Dict[str, Any]:
        return self.request_json("GET", path_or_url)

    def request_json(self, method: str, path_or_url: str, *, json: Any = None) -> Dict[str, Any]:
        url = self._build_url(path_or_url)
        backoff = 2.0

        for attempt in range(self._max_retries + 1):
            attempt_number = attempt + 1
            try:
                resp = self._send(method, url, json=json)
            except requests.RequestException as exc:
                if attempt >= self._max_retries:
                    emit("ERROR", "GRAPH", f"Graph request failed: method={method} url={url} error={exc}")
                    raise RuntimeError(f"Graph request failed: {exc}") from exc
                emit(
                    "WARN",
                    "GRAPH",
                    f"Graph request retrying after transport error: method={method} url={url} attempt={attempt_number}/{self._max_retries + 1} error={exc}",
                )
                time.sleep(backoff + random.uniform(0, 0.25))
                backoff = min(backoff * 2, 60)
                continue

            if resp.status_code == 401 and attempt < self._max_retries:
                self._tokens.invalidate()
                emit(
                    "WARN",
                    "GRAPH",
                    f"Graph request retrying after 401: method={method} url={url} attempt={attempt_number}/{self._max_retries + 1}",
                )
                time.sleep(0.5)
                continue

            if resp.status_code in RETRYABLE_STATUSES and attempt < self._max_retries:
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                emit(
                    "WARN",
                    "GRAPH",
                    f"Graph request retrying after status={resp.status_code}: method={method} url={url} attempt={attempt_number}/{self._max_retries + 1}",
                )
                if retry_after is not None:
                    time.sleep(retry_after)
                else:
                    time.sleep(backoff + random.uniform(0, 0.25))
                    backoff = min(backoff * 2, 60)
                continue

            if not resp.ok:
                error = _error_from_response(resp, url)
                emit(
                    "ERROR",
                    "GRAPH",
                    f"Graph request failed with status={resp.status_code}: method={method} url={url} error={error.message}",
                )
                raise error

            return self._decode(resp, method, url)

        emit("ERROR", "GRAPH", f"Graph request retries exhausted: method={method} url={url}")
        raise RuntimeError("Graph request retries exhausted")

    def iter_paged(self, path_or_url: str) -> Iterator[Dict[str, Any]]:
        next_url: Optional[str] = self._build_url(path_or_url)
        while next_url:
            data = self.get_json(next_url)
            for item in data.get("value", []) or []:
                yield item
            next_url = data.get("@odata.nextLink")

    def collect_paged(self, path_or_url: str) -> list[Dict[str, Any]]:
        return list(self.iter_paged(path_or_url))

    def list_children(self, drive_id: str, item_id: str) -> list[Dict[str, Any]]:
        return self.collect_paged(f"/drives/{drive_id}/items/{item_id}/children?$top={PAGE_SIZE}")

    def list_permissions(self, drive_id: str, item_id: str) -> list[Dict[str, Any]]:
        return self.collect_paged(f"/drives/{drive_id}/items/{item_id}/permissions?$select={PERMISSION_SELECT}")

    def submit_batch(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST one `$batch` payload, exactly once.

        Retrying is left to the caller, so every failure (transport or HTTP)
        surfaces as a GraphError. Throttled responses carry the parsed
        Retry-After value.
        """
        url = self._build_url("/$batch")
        try:
            resp = self._send("POST", url, json=body)
        except requests.RequestException as exc:
            raise GraphError(0, f"transport error: {exc}", url) from exc

        if resp.status_code == 401:
            self._tokens.invalidate()
        if not resp.ok:
            raise _error_from_response(resp, url)
        return self._decode(resp, "POST", url)


def chunks(items: Iterable[Any], size: int) -> Iterator[list[Any]]:
    batch: list[Any] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
