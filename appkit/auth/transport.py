from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

import httpx

from .config import DEFAULT_TIMEOUT_S, SERVICE_NAME
from .errors import TransportError
from .hooks import REQUEST_ARGS, FilterPipeline
from .signer import redact_params

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    url: str

    async def get(self, params: Mapping[str, str]) -> Any: ...


class HttpTransport:
    """
    GET the authentication web service and return its parsed JSON body.

    `timeout_s` caps the whole round trip. Every failure (timeout, connection
    error, non-2xx, non-JSON body) raises TransportError; nothing is retried.
    Pass `client` to reuse a configured httpx.AsyncClient (tests use one with
    httpx.MockTransport); otherwise a short-lived client is opened per request.
    """
    def __init__(
        self,
        url: str,
        *,
        timeout_s: Optional[float] = DEFAULT_TIMEOUT_S,
        hooks: Optional[FilterPipeline] = None,
        client: Optional[httpx.AsyncClient] = None,
        verify_tls: bool = True,
    ):
        self.url = url
        self.timeout_s = timeout_s
        self.hooks = hooks or FilterPipeline()
        self._client = client
        self.verify_tls = verify_tls

    def _request_args(self, params: Mapping[str, str]) -> dict[str, Any]:
        args: dict[str, Any] = {
            "timeout": self.timeout_s,
            "headers": {"Accept": "application/json"},
            "params": dict(params),
        }
        args = self.hooks.apply(REQUEST_ARGS, args, SERVICE_NAME)
        # url and method belong to the transport
        args.pop("url", None)
        args.pop("method", None)
        return args

    async def _send(self, args: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.request("GET", self.url, **args)
        async with httpx.AsyncClient(verify=self.verify_tls) as client:
            return await client.request("GET", self.url, **args)

    async def get(self, params: Mapping[str, str]) -> Any:
        args = self._request_args(params)
        logger.debug("Sending auth query to %s: %s", self.url, redact_params(args.get("params") or {}))

        # httpx timeouts apply per phase; timeout_s also bounds the whole round trip
        t0 = time.time()
        try:
            resp = await asyncio.wait_for(self._send(args), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError("timeout", f"no answer within {self.timeout_s}s", url=self.url) from e
        except httpx.TimeoutException as e:
            raise TransportError("timeout", f"{type(e).__name__}: {e}", url=self.url) from e
        except httpx.HTTPError as e:
            raise TransportError("error", f"{type(e).__name__}: {e}", url=self.url) from e

        elapsed_ms = int((time.time() - t0) * 1000)
        logger.debug("Auth query answered %s in %d ms", resp.status_code, elapsed_ms)

        if not resp.is_success:
            raise TransportError(
                "http",
                f"{resp.status_code} {resp.reason_phrase}",
                url=self.url,
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(
                "parsererror",
                f"invalid JSON body: {e}",
                url=self.url,
                status_code=resp.status_code,
            ) from e
