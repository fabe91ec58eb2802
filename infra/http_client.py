# infra/http_client.py
from __future__ import annotations

import aiohttp
import asyncio
import itertools
import json
import random
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode
import logging
from utils.logger import logger

JSON_SEPARATORS = (",", ":")

class HttpError(Exception):
    def __init__(self, status: int, message: str, payload: Optional[dict] = None):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.payload = payload or {}


class RpcError(Exception):
    """JSON-RPC error object returned by a node."""
    def __init__(self, code: Any, msg: str, payload: dict | None = None):
        self.code = code
        self.msg = msg
        self.payload = payload or {}
        super().__init__(f"RPC code={code}, msg={msg}")


def _json_dumps_compact(obj: Any) -> str:
    return json.dumps(obj, separators=JSON_SEPARATORS, ensure_ascii=False)

def _build_query(params: Optional[Mapping[str, Any]]) -> str:
    if not params:
        return ""
    return "?" + urlencode(params, doseq=True, safe=":/")

def _mask(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 8:
        return "*" * len(s)
    return s[:4] + "*" * (len(s) - 8) + s[-4:]

class HttpClient:
    """
    JSON over HTTP for REST providers and JSON-RPC nodes.

    - 5xx/429 and network errors are retried with exponential backoff + jitter
    - non-2xx after retries -> HttpError; network failure -> HttpError(599)
    - JSON-RPC error objects -> RpcError (never retried)
    """
    def __init__(self,
                 cfg: Mapping[str, Any],
                 logger: Optional[logging.Logger] = None,
                 *,
                 base_url: Optional[str] = None,
                 timeout_ms: Optional[int] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 ) -> None:
        self.cfg = cfg
        self.log = logger or logging.getLogger("HttpClient")
        self.session = session
        self._owned_session = session is None
        self.base_url = (base_url or "").rstrip("/")

        # timeouts & retries
        timeouts_cfg = cfg.get("timeouts", {}) or {}
        retries_cfg = cfg.get("retries", {}) or {}
        self.timeout_ms = int(timeout_ms or timeouts_cfg.get("rest_ms", 5000))
        self.max_attempts = int(retries_cfg.get("rest_max_attempts", 3))
        self.backoff_ms = int(retries_cfg.get("backoff_ms", 200))

        self._rpc_ids = itertools.count(1)

        self.log.debug(
            f"HttpClient init base_url={self.base_url or '-'} timeout_ms={self.timeout_ms} attempts={self.max_attempts}"
        )

    # ---- async context manager ----------------------------------------------------
    async def __aenter__(self) -> "HttpClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or (self._owned_session and self.session.closed):
            timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000.0)
            self.session = aiohttp.ClientSession(timeout=timeout, raise_for_status=False, trust_env=True)
        return self.session

    async def close(self) -> None:
        if self._owned_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def _url(self, url: str, params: Optional[Mapping[str, Any]]) -> str:
        if not url.startswith(("http://", "https://")):
            assert self.base_url, "relative url requires base_url"
            url = self.base_url + "/" + url.lstrip("/")
        return url + _build_query(params)

    async def request(
            self,
            method: str,
            url: str,
            *,
            params: Optional[Mapping[str, Any]] = None,
            json_body: Optional[Any] = None,
            headers: Optional[Mapping[str, str]] = None,
            timeout_ms: Optional[int] = None,
            retry: bool = True,
        ) -> Dict[str, Any]:
        """
        Unified request entry.
        - url: absolute, or a path joined onto base_url
        - params: querystring
        - json_body: JSON request body
        - timeout_ms: overrides the session timeout for this call
        - retry: exponential backoff on retryable failures
        """
        method = method.upper()
        full_url = self._url(url, params)
        body_str = _json_dumps_compact(json_body) if json_body is not None else ""
        req_headers = {
            "Content-Type": "application/json", "Accept": "application/json"
        }
        if headers:
            req_headers.update(headers)

        extra: Dict[str, Any] = {}
        if timeout_ms:
            extra["timeout"] = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)
        session = self._ensure_session()

        attempt = 0
        while True:
            attempt += 1
            try:
                async with session.request(
                    method,
                    full_url,
                    data=body_str if body_str else None,
                    headers=req_headers,
                    **extra,
                ) as resp:
                    text = await resp.text()
                    status = resp.status
                    if status >= 400:
                        if retry and (status >= 500 or status == 429) and attempt < self.max_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        raise HttpError(status, text[:512])

                    try:
                        payload = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        raise HttpError(status, f"invalid json: {text[:256]}")
                    if not isinstance(payload, dict):
                        return {"data": payload}
                    return payload
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retry and attempt < self.max_attempts:
                    await self._sleep_backoff(attempt)
                    logger.warning(f"Network error: {e!r} when requesting {full_url}, retrying...")
                    continue
                raise HttpError(599, f"Network error: {e!r}") from e
            except HttpError:
                raise
            except Exception as e:
                raise HttpError(599, f"Unexpected error: {e}") from e

    async def _sleep_backoff(self, attempt: int) -> None:
        base = self.backoff_ms * (2 ** (attempt - 1))
        jitter = random.randint(0, self.backoff_ms)
        await asyncio.sleep((base + jitter) / 1000.0)

    # ---- convenience wrappers -------------------------------------------------------
    async def get_json(self, url: str, params: Optional[Mapping[str, Any]] = None,
                       headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        return await self.request("GET", url, params=params, headers=headers)

    async def post_json(self, url: str, json_body: Any,
                        headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        return await self.request("POST", url, json_body=json_body, headers=headers)

    async def rpc_call(self, url: str, method: str, params: Optional[list] = None,
                       *, timeout_ms: Optional[int] = None) -> Any:
        """POST a JSON-RPC 2.0 call and return its `result`."""
        body = {"jsonrpc": "2.0", "id": next(self._rpc_ids), "method": method, "params": params or []}
        payload = await self.request("POST", url, json_body=body, timeout_ms=timeout_ms)
        err = payload.get("error")
        if err:
            if isinstance(err, dict):
                raise RpcError(err.get("code"), str(err.get("message", "")), payload)
            raise RpcError(None, str(err), payload)
        if "result" not in payload:
            raise RpcError(None, "missing result", payload)
        return payload["result"]
