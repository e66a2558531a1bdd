"""
Reverse proxy to the internal OpenClaw gateway.

HTTP requests are forwarded with httpx and streamed back; WebSocket
upgrades are piped frame by frame through a `websockets` client
connection. Both paths inject `Authorization: Bearer <gateway token>` when
the caller did not send one (browsers cannot set it on WebSocket upgrades).
"""

import asyncio
import contextlib
from typing import Callable

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

import settings

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

# Generated by the websockets client itself during the upstream handshake.
WS_HANDSHAKE = {
    "host",
    "user-agent",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}

FORWARDED = {"x-forwarded-for", "x-forwarded-proto", "x-forwarded-host"}

# Close codes that may not be sent in a close frame.
_RESERVED_CLOSE_CODES = {1005, 1006, 1015}


def _raw_target(scope: dict) -> bytes:
    """Path plus query exactly as the client sent them."""
    raw = scope.get("raw_path") or scope.get("path", "/").encode("utf-8")
    query = scope.get("query_string") or b""
    return raw + b"?" + query if query else raw


class GatewayProxy:
    def __init__(
        self,
        target: str | None = None,
        token_provider: Callable[[], str] | None = None,
        timeout: httpx.Timeout | None = None,
    ):
        self.target = (target or settings.gateway_target()).rstrip("/")
        self._base = httpx.URL(self.target)
        self._token_provider = token_provider or settings.gateway_token
        self.client = httpx.AsyncClient(
            timeout=timeout or httpx.Timeout(300.0, connect=10.0),
            follow_redirects=False,
        )

    async def close(self):
        await self.client.aclose()

    def _with_auth(self, headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
        """Add the gateway bearer token unless the caller already sent Authorization."""
        if any(k.lower() == "authorization" for k, _ in headers):
            return headers
        token = self._token_provider()
        if token:
            headers.append(("Authorization", f"Bearer {token}"))
        return headers

    @staticmethod
    def _forwarded_for(headers, client_host: str | None, scheme: str) -> list[tuple[str, str]]:
        prior = headers.get("x-forwarded-for")
        chain = ", ".join(p for p in (prior, client_host) if p)
        out = []
        if chain:
            out.append(("X-Forwarded-For", chain))
        out.append(("X-Forwarded-Proto", headers.get("x-forwarded-proto") or scheme))
        host = headers.get("x-forwarded-host") or headers.get("host")
        if host:
            out.append(("X-Forwarded-Host", host))
        return out

    def upstream_headers(self, request: Request) -> list[tuple[str, str]]:
        """Headers for the forwarded HTTP request."""
        headers = [
            (k, v) for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in FORWARDED and k.lower() != "content-length"
        ]
        client_host = request.client.host if request.client else None
        headers.extend(self._forwarded_for(request.headers, client_host, request.url.scheme))
        return self._with_auth(headers)

    # ============================================================
    # HTTP
    # ============================================================

    async def forward(self, request: Request) -> Response:
        """Forward one HTTP request; transport errors become 502/504 responses."""
        url = self._base.copy_with(raw_path=_raw_target(request.scope))
        body = await request.body()
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self.upstream_headers(request),
            content=body,
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            print(f"[proxy] timeout {request.method} {request.url.path}: {e}")
            return PlainTextResponse("Gateway timeout\n", status_code=504)
        except httpx.HTTPError as e:
            print(f"[proxy] {type(e).__name__} {request.method} {request.url.path}: {e}")
            return PlainTextResponse("Gateway unavailable\n", status_code=502)

        async def stream_body():
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                print(f"[proxy] upstream stream aborted: {e}")
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            stream_body(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for key, value in upstream.headers.multi_items():
            if key.lower() in HOP_BY_HOP:
                continue
            response.headers.append(key, value)
        return response

    # ============================================================
    # WebSocket
    # ============================================================

    def websocket_headers(self, websocket: WebSocket) -> list[tuple[str, str]]:
        """Headers for the upstream WebSocket handshake."""
        headers = [
            (k, v) for k, v in websocket.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in WS_HANDSHAKE and k.lower() not in FORWARDED
        ]
        client_host = websocket.client.host if websocket.client else None
        scheme = "https" if websocket.url.scheme == "wss" else "http"
        headers.extend(self._forwarded_for(websocket.headers, client_host, scheme))
        return self._with_auth(headers)

    async def forward_websocket(self, websocket: WebSocket):
        """Connect upstream first, then accept the client and pipe frames both ways."""
        ws_base = "ws" + self.target[len("http"):]
        url = ws_base + _raw_target(websocket.scope).decode("latin-1")
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream = await ws_connect(
                url,
                additional_headers=self.websocket_headers(websocket),
                subprotocols=subprotocols,
                user_agent_header=websocket.headers.get("user-agent"),
                compression=None,
                ping_interval=None,
                max_size=None,
                open_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            print(f"[proxy] websocket upstream failed for {websocket.url.path}: {type(e).__name__}: {e}")
            # Closing before accept rejects the handshake (HTTP 403).
            await websocket.close(code=1011)
            return

        await websocket.accept(subprotocol=upstream.subprotocol)
        try:
            await self._pipe(websocket, upstream)
        finally:
            await upstream.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                code = upstream.close_code
                if code is None or code in _RESERVED_CLOSE_CODES:
                    code = 1000
                with contextlib.suppress(RuntimeError):
                    await websocket.close(code=code)

    async def _pipe(self, websocket: WebSocket, upstream):
        async def client_to_upstream():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
                elif message.get("text") is not None:
                    await upstream.send(message["text"])

        async def upstream_to_client():
            async for message in upstream:
                if isinstance(message, bytes):
                    await websocket.send_bytes(message)
                else:
                    await websocket.send_text(message)

        tasks = {
            asyncio.create_task(client_to_upstream(), name="ws-client-to-gateway"),
            asyncio.create_task(upstream_to_client(), name="ws-gateway-to-client"),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, ConnectionClosed, RuntimeError):
                await task
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, ConnectionClosed):
                print(f"[proxy] websocket pipe ended: {type(exc).__name__}: {exc}")
