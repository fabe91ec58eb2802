# infra/__init__.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol, Mapping, Any, Optional, Dict, List

from infra.http_client import HttpClient, HttpError, RpcError

# ========== 1) Port: services depend on this, not on the concrete HttpClient ==========
class HttpPort(Protocol):
    async def request(self, method: str, url: str, *, params: Optional[Mapping[str, Any]] = None,
                      json_body: Optional[Any] = None, headers: Optional[Mapping[str, str]] = None,
                      timeout_ms: Optional[int] = None, retry: bool = True) -> Dict[str, Any]: ...
    async def get_json(self, url: str, params: Optional[Mapping[str, Any]] = None,
                       headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]: ...
    async def post_json(self, url: str, json_body: Any,
                        headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]: ...
    async def rpc_call(self, url: str, method: str, params: Optional[list] = None,
                       *, timeout_ms: Optional[int] = None) -> Any: ...


# ========== 2) Lightweight container: create / hold / close ==========
class HttpContainer:
    """
    Owns the shared HttpClient and any background tasks attached to it.
    - The composition root holds it.
    - Services receive container.http.
    """
    def __init__(self, http: HttpClient, tasks: Optional[List[asyncio.Task]] = None) -> None:
        self.http = http
        self._tasks = tasks or []

    @classmethod
    async def start(cls,
                    cfg: Mapping[str, Any],
                    logger: Optional[logging.Logger] = None,
                    ) -> "HttpContainer":
        http = HttpClient(cfg, logger=logger)
        await http.__aenter__()
        return cls(http)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await t
        await self.http.close()


__all__ = ["HttpPort", "HttpContainer", "HttpClient", "HttpError", "RpcError"]
