"""Functional tests that push requests through /proxy/<identifier> to an echo upstream."""

import asyncio
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from reverser.config import Settings
from reverser.main import create_app
from reverser.services.dispatcher import Dispatcher
from reverser.services.registry import Registry

FORWARDED_PATHS = {
    "/proxy/testing": "/",
    "/proxy/testing/one/two/three": "/one/two/three",
    "/proxy/testing/?foo=bar": "/?foo=bar",
}

upstream_requests: List[httpx.Request] = []


class TrackedStream(httpx.AsyncByteStream):
    """Upstream body that records how often it was closed."""

    def __init__(self, chunks: List[bytes], *, error: Exception | None = None, hang: bool = False) -> None:
        self.chunks = chunks
        self.error = error
        self.hang = hang
        self.close_calls = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.close_calls += 1


def _echo(request: httpx.Request) -> httpx.Response:
    upstream_requests.append(request)
    body = f"{request.url.raw_path.decode('ascii')}, {request.method}".encode()
    return httpx.Response(200, stream=httpx.ByteStream(body))


def _build(handler=_echo, settings: Settings | None = None):
    settings = settings or Settings()
    registry = Registry()
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = Dispatcher(registry, settings=settings, client=upstream)
    app = create_app(settings=settings, registry=registry, dispatcher=dispatcher)
    return app, registry


def _build_client(handler=_echo, settings: Settings | None = None) -> tuple[TestClient, Registry]:
    app, registry = _build(handler, settings)
    return TestClient(app), registry


@pytest.fixture(autouse=True)
def _reset_upstream() -> None:
    upstream_requests.clear()


@pytest.mark.parametrize("method", ["GET", "POST"])
@pytest.mark.parametrize(("path", "forwarded"), sorted(FORWARDED_PATHS.items()))
def test_proxy_forwards_path_and_method(method: str, path: str, forwarded: str) -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", "testing")

    response = client.request(method, path)

    assert response.status_code == 200
    assert response.text == f"{forwarded}, {method}"
    assert upstream_requests[-1].url.host == "upstream.test"


def test_already_read_upstream_response_is_relayed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return httpx.Response(200, text="buffered body")

    client, registry = _build_client(handler)
    registry.register("http://upstream.test", "testing")

    response = client.get("/proxy/testing/buffered")

    assert response.status_code == 200
    assert response.text == "buffered body"


@pytest.mark.parametrize(
    ("identifier", "path"),
    [("my app", "/proxy/my%20app/x"), ("café", "/proxy/caf%C3%A9/x")],
)
def test_percent_encoded_identifiers_resolve(identifier: str, path: str) -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", identifier)

    response = client.get(path)

    assert response.status_code == 200
    assert response.text == "/x, GET"


def test_unknown_identifier_returns_404_without_contacting_upstream() -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", "testing")

    response = client.get("/proxy/unknown-id")

    assert response.status_code == 404
    assert upstream_requests == []


def test_unregistered_identifier_returns_404() -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", "testing")
    assert client.get("/proxy/testing").status_code == 200

    registry.unregister("testing")
    response = client.get("/proxy/testing")

    assert response.status_code == 404
    assert len(upstream_requests) == 1


def test_empty_identifier_returns_404() -> None:
    client, _ = _build_client()

    response = client.get("/proxy/")

    assert response.status_code == 404
    assert upstream_requests == []


def test_proxy_relays_body_headers_and_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return httpx.Response(
            201,
            headers=[("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-upstream", "yes")],
            stream=httpx.ByteStream(b"echo:" + request.content),
        )

    client, registry = _build_client(handler)
    registry.register("https://upstream.test:8443/base", "testing")

    response = client.put(
        "/proxy/testing/items/7?debug=1",
        content=b"\x00binary-payload\xff",
        headers={"x-custom": "value", "connection": "keep-alive"},
    )

    assert response.status_code == 201
    assert response.content == b"echo:\x00binary-payload\xff"
    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert response.headers["x-upstream"] == "yes"

    forwarded = upstream_requests[-1]
    assert forwarded.method == "PUT"
    assert str(forwarded.url) == "https://upstream.test:8443/items/7?debug=1"
    assert forwarded.headers["host"] == "upstream.test:8443"
    assert forwarded.headers["x-custom"] == "value"
    assert forwarded.headers["x-forwarded-for"] == "testclient"
    assert forwarded.headers["x-forwarded-host"] == "testserver"
    assert forwarded.headers["x-forwarded-proto"] == "http"
    assert "connection" not in forwarded.headers


def test_forwarded_headers_can_be_disabled() -> None:
    client, registry = _build_client(settings=Settings(forwarded_headers=False))
    registry.register("http://upstream.test", "testing")

    client.get("/proxy/testing", headers={"x-forwarded-for": "10.0.0.1"})

    forwarded = upstream_requests[-1]
    assert forwarded.headers["x-forwarded-for"] == "10.0.0.1"
    assert "x-forwarded-proto" not in forwarded.headers


def test_existing_forwarded_for_is_appended() -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", "testing")

    client.get("/proxy/testing", headers={"x-forwarded-for": "10.0.0.1"})

    assert upstream_requests[-1].headers["x-forwarded-for"] == "10.0.0.1, testclient"


def test_proxy_milestones_land_in_app_log_store() -> None:
    client, registry = _build_client()
    registry.register("http://upstream.test", "testing")

    client.get("/proxy/testing", headers={"x-correlation-id": "req-ok"})
    logs = client.get("/api/requests/req-ok/logs").json()["logs"]

    assert [entry["extra"]["event"] for entry in logs] == [
        "proxy.request_received",
        "proxy.forwarding",
        "proxy.upstream_response",
    ]
    assert logs[-1]["extra"]["identifier"] == "testing"


def test_unreachable_upstream_returns_502() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client, registry = _build_client(handler)
    registry.register("http://upstream.test", "testing")

    response = client.get("/proxy/testing/health", headers={"x-correlation-id": "req-502"})

    assert response.status_code == 502
    assert response.json()["request_id"] == "req-502"
    assert len(upstream_requests) == 1

    logs = client.get("/api/requests/req-502/logs").json()["logs"]
    assert any(entry["extra"].get("event") == "proxy.upstream_unreachable" for entry in logs)


def test_unreachable_upstream_with_owned_client_returns_502() -> None:
    settings = Settings(upstream_connect_timeout_seconds=2.0)
    registry = Registry()
    app = create_app(settings=settings, registry=registry)
    registry.register("http://127.0.0.1:1", "dead")

    with TestClient(app) as client:
        response = client.get("/proxy/dead/anything")
        pooled = app.state.dispatcher.client

    assert response.status_code == 502
    assert pooled.is_closed


def test_owned_client_is_shared_across_requests() -> None:
    dispatcher = Dispatcher(Registry(), settings=Settings())

    first = dispatcher.client

    assert dispatcher.client is first
    asyncio.run(dispatcher.aclose())
    assert first.is_closed
    assert dispatcher.client is not first


def test_upstream_stream_is_closed_after_relay() -> None:
    stream = TrackedStream([b"part-1,", b"part-2"])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    client, registry = _build_client(handler)
    registry.register("http://upstream.test", "testing")

    response = client.get("/proxy/testing/chunks")

    assert response.content == b"part-1,part-2"
    assert stream.close_calls == 1


def test_upstream_stream_is_closed_when_relay_fails() -> None:
    stream = TrackedStream([b"partial"], error=httpx.ReadError("upstream reset"))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    app, registry = _build(handler)
    registry.register("http://upstream.test", "testing")
    client = TestClient(app, raise_server_exceptions=False)

    client.get("/proxy/testing/broken", headers={"x-correlation-id": "req-broken"})

    assert stream.close_calls == 1
    events = [entry["extra"]["event"] for entry in app.state.log_store.get("req-broken")]
    assert "proxy.stream_failed" in events


def test_client_disconnect_cancels_relay_and_closes_upstream() -> None:
    stream = TrackedStream([b"first-chunk"], hang=True)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=stream)

    app, registry = _build(handler)
    registry.register("http://upstream.test", "testing")
    sent: List[dict] = []

    async def scenario() -> None:
        first_chunk_sent = asyncio.Event()

        async def receive() -> dict:
            await first_chunk_sent.wait()
            return {"type": "http.disconnect"}

        async def send(message: dict) -> None:
            sent.append(message)
            if message["type"] == "http.response.body" and message.get("body"):
                first_chunk_sent.set()

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/proxy/testing/slow",
            "raw_path": b"/proxy/testing/slow",
            "query_string": b"",
            "root_path": "",
            "headers": [(b"host", b"testserver")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        await asyncio.wait_for(app(scope, receive, send), timeout=5)

    asyncio.run(scenario())

    assert sent[0]["status"] == 200
    assert any(message.get("body") == b"first-chunk" for message in sent)
    assert stream.close_calls == 1


def test_custom_prefix_is_routed_to_dispatcher() -> None:
    client, registry = _build_client(settings=Settings(proxy_prefix="gateway"))
    registry.register("http://upstream.test", "testing")

    response = client.post("/gateway/testing/submit")

    assert response.text == "/submit, POST"
    assert client.get("/proxy/testing").status_code == 404
