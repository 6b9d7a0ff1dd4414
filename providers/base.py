from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Literal
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from pipeline.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    result: Any
    kind: Literal["sync"] = "sync"


@dataclass(frozen=True)
class AsyncHandle:
    provider_handle: str
    kind: Literal["async"] = "async"


def sanitize_error_message(message: str) -> str:
    text = (message or "").replace("\n", " ")
    text = text.replace("Bearer ", "Bearer [redacted]")
    return text[:300]


def missing_key_error(provider: str, env_name: str) -> ProviderError:
    return ProviderError(
        code="provider_not_configured",
        message=f"{env_name} is not set",
        provider=provider,
        retryable=False,
    )


def _is_retryable(status: int) -> bool:
    return status >= 500 or status == 429


class HttpProvider:
    """Minimal JSON/bytes client shared by the HTTP-based adapters."""

    provider_name = "provider"

    def __init__(self, *, base_url: str, headers: dict[str, str], timeout_s: int, retries: int = 1) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers)
        self._timeout_s = timeout_s
        self._retries = max(0, retries)

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    def _open(self, method: str, path: str, body: dict[str, Any] | None, accept: str) -> bytes:
        headers = dict(self._headers)
        headers["Accept"] = accept
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        req = urlrequest.Request(url=self._url(path), data=data, method=method, headers=headers)
        try:
            with urlrequest.urlopen(req, timeout=max(5, self._timeout_s)) as resp:
                return resp.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ProviderError(
                code=f"http_{exc.code}",
                message=sanitize_error_message(detail) or f"HTTP {exc.code}",
                provider=self.provider_name,
                retryable=_is_retryable(exc.code),
            ) from exc
        except URLError as exc:
            raise ProviderError(
                code="network_error",
                message=sanitize_error_message(str(exc.reason)),
                provider=self.provider_name,
                retryable=True,
            ) from exc
        except TimeoutError as exc:
            raise ProviderError(
                code="timeout",
                message=f"{self.provider_name} did not respond in {self._timeout_s}s",
                provider=self.provider_name,
                retryable=True,
            ) from exc

    def _with_retries(self, method: str, path: str, body: dict[str, Any] | None, accept: str) -> bytes:
        last_error: ProviderError | None = None
        for attempt in range(self._retries + 1):
            try:
                return self._open(method, path, body, accept)
            except ProviderError as exc:
                last_error = exc
                if not exc.retryable or attempt >= self._retries:
                    break
                logger.warning("%s %s retry %s: %s", self.provider_name, path, attempt + 1, exc.code)
                time.sleep(min(2**attempt, 3))
        assert last_error is not None
        raise last_error

    def request_json(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        raw = self._with_retries(method, path, body, "application/json")
        try:
            parsed = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProviderError(
                code="invalid_response",
                message="response was not valid JSON",
                provider=self.provider_name,
                retryable=True,
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderError(
                code="invalid_response",
                message="response was not a JSON object",
                provider=self.provider_name,
            )
        return parsed

    def request_bytes(self, method: str, path: str, body: dict[str, Any] | None = None, accept: str = "*/*") -> bytes:
        return self._with_retries(method, path, body, accept)


def download_bytes(url: str, *, timeout_s: int = 120, provider: str = "download") -> bytes:
    req = urlrequest.Request(url=url, method="GET")
    try:
        with urlrequest.urlopen(req, timeout=timeout_s) as resp:
            return resp.read()
    except HTTPError as exc:
        raise ProviderError(
            code=f"http_{exc.code}",
            message=f"download failed with HTTP {exc.code}",
            provider=provider,
            retryable=_is_retryable(exc.code),
        ) from exc
    except URLError as exc:
        raise ProviderError(
            code="network_error",
            message=sanitize_error_message(str(exc.reason)),
            provider=provider,
            retryable=True,
        ) from exc
