import asyncio

import httpx
import pytest

from appkit.auth import (
    REQUEST_ARGS,
    WEB_SERVICE_PARAMS,
    AuthConfig,
    FilterPipeline,
    HandshakeClient,
    HttpTransport,
    TransportError,
)

pytestmark = pytest.mark.asyncio


async def test_get_returns_parsed_json(ws_url):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"result": {"status": 1}})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = HttpTransport(ws_url, client=http)

    body = await transport.get({"auth_action": "get_public_key", "control_key": "a&b=c+d%"})

    assert body == {"result": {"status": 1}}
    assert seen["method"] == "GET"
    assert seen["params"]["control_key"] == "a&b=c+d%"


async def test_non_json_body_is_parser_error(ws_url):
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))
    )
    transport = HttpTransport(ws_url, client=http)

    with pytest.raises(TransportError) as exc:
        await transport.get({})

    assert exc.value.kind == "parsererror"
    assert exc.value.url == ws_url


async def test_connection_error_is_transport_error(ws_url):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(TransportError) as exc:
        await HttpTransport(ws_url, client=http).get({})

    assert exc.value.kind == "error"


async def test_timeout_bounds_the_whole_round_trip(ws_url):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    http = httpx.AsyncClient(transport=httpx.MockTransport(slow))

    with pytest.raises(TransportError) as exc:
        await HttpTransport(ws_url, client=http, timeout_s=0.05).get({})

    assert exc.value.kind == "timeout"
    assert exc.value.url == ws_url


async def test_request_args_filter_runs_before_dispatch(ws_url):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["lang"] = request.headers.get("x-app-lang")
        captured["url"] = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        return httpx.Response(200, json={})

    hooks = FilterPipeline()

    def add_header(args, service):
        args["headers"]["X-App-Lang"] = "fr"
        args["url"] = "https://evil.example/"
        return args

    hooks.add_filter(REQUEST_ARGS, add_header)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    await HttpTransport(ws_url, client=http, hooks=hooks).get({})

    assert captured["lang"] == "fr"
    assert captured["url"] == ws_url


async def test_shared_hooks_reach_the_wire_through_from_config(server, mock_http):
    hooks = FilterPipeline()
    hooks.add_filter(WEB_SERVICE_PARAMS, lambda params, service: {**params, "app_version": "1.2"})
    config = AuthConfig(ws_url="https://example.org/wp-appkit-api/my-app")

    client = HandshakeClient.from_config(config, client=mock_http, hooks=hooks)
    res = await client.connect_user("bob", "pw")

    assert res.ok is True
    assert all(r["app_version"] == "1.2" for r in server.requests)
    assert client.current_user_is_authenticated() is True
