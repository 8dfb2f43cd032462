"""Adapter for a REST key-value service.

The service is expected to expose ``GET``/``PUT``/``DELETE`` on
``{base_url}/{key}``, answering ``404`` for missing keys.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import aiohttp

from pypersist._redact import redact_for_log
from pypersist.exceptions import RemoveError, WriteError

_logger = logging.getLogger(__name__)

_CONTENT_TYPE = "application/json; charset=UTF-8"


class HttpAdapter:
    """Key-value store reached over HTTP.

    When no ``session`` is passed, one is created lazily and closed by
    :meth:`close`.  An externally supplied session is never closed here.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._external_session = session is not None
        self._http = session
        self._headers = dict(headers or {})
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def url_for(self, key: str) -> str:
        return f"{self._base_url}/{quote(key, safe='')}"

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
        return self._http

    async def get_item(self, key: str) -> str | None:
        url = self.url_for(key)
        _logger.debug("GET %s", url)
        try:
            async with self._session().get(url, headers=self._headers) as resp:
                if resp.status == 404:
                    return None
                text = await resp.text()
                if resp.status != 200:
                    _logger.debug("GET %s returned HTTP %s: %s", url, resp.status, redact_for_log(text))
                    return None
                return text
        except aiohttp.ClientError:
            _logger.debug("GET %s failed", url, exc_info=True)
            return None

    async def set_item(self, key: str, value: str) -> None:
        url = self.url_for(key)
        headers = {"content-type": _CONTENT_TYPE, **self._headers}
        _logger.debug("PUT %s body=%s", url, redact_for_log(value, max_string=128))
        try:
            async with self._session().put(url, data=value, headers=headers) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise WriteError(
                        f"HTTP {resp.status} writing {key!r}: {text[:200]}",
                        key=key,
                        adapter_kind="http",
                    )
        except WriteError:
            raise
        except aiohttp.ClientError as exc:
            raise WriteError(f"Request writing {key!r} failed: {exc}", key=key, adapter_kind="http") from exc

    async def remove_item(self, key: str) -> None:
        url = self.url_for(key)
        _logger.debug("DELETE %s", url)
        try:
            async with self._session().delete(url, headers=self._headers) as resp:
                if resp.status >= 300 and resp.status != 404:
                    text = await resp.text()
                    raise RemoveError(
                        f"HTTP {resp.status} removing {key!r}: {text[:200]}",
                        key=key,
                        adapter_kind="http",
                    )
        except RemoveError:
            raise
        except aiohttp.ClientError as exc:
            raise RemoveError(f"Request removing {key!r} failed: {exc}", key=key, adapter_kind="http") from exc

    async def close(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
        self._http = None


def create_http_adapter(options: Mapping[str, Any], container_id: str) -> HttpAdapter:
    return HttpAdapter(
        str(options.get("base_url") or "http://localhost:8080/kv"),
        session=options.get("session"),
        headers=options.get("headers"),
        timeout=float(options.get("timeout", 10.0)),
    )
