"""Resolve ``/proxy/<identifier>/...`` requests and relay them to their upstream."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, List, Tuple
from urllib.parse import unquote

import httpx
from fastapi import Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..config import Settings, get_settings
from .errors import NotFoundError, UpstreamUnreachableError
from .logging import RequestContext
from .registry import Registry, Target

logger = logging.getLogger(__name__)

# RFC 9110 hop-by-hop headers, never forwarded in either direction.
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

RawHeaders = List[Tuple[bytes, bytes]]


@dataclass(frozen=True, slots=True)
class ProxyPath:
    """An incoming proxy path split into identifier and forwarded remainder."""

    identifier: str
    remainder: str
    prefix: str


def _path_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^(?P<prefix>{re.escape(prefix)}/(?P<identifier>[^/]*))(?P<remainder>/.*)?$", re.DOTALL)


def parse_proxy_path(path: str, prefix: str = "/proxy") -> ProxyPath:
    """Split ``path`` into the registered identifier and the remainder to forward.

    ``/proxy/testing/one/two`` yields identifier ``testing`` and remainder
    ``/one/two``; an empty remainder becomes ``/``. The identifier segment is
    percent-decoded, the remainder stays raw. Paths that do not reach the
    identifier segment raise ``NotFoundError``.
    """

    match = _path_pattern(prefix).match(path)
    if match is None:
        raise NotFoundError(path)
    return ProxyPath(
        identifier=unquote(match.group("identifier")),
        remainder=match.group("remainder") or "/",
        prefix=match.group("prefix"),
    )


def build_upstream_url(target: Target, remainder: str, query: bytes = b"") -> httpx.URL:
    """Combine the target's scheme and host with the incoming remainder.

    Only scheme, host and port come from the registered upstream; its own path
    is not prepended to ``remainder``.
    """

    return target.upstream.copy_with(path=remainder, query=query or None, fragment=None)


def strip_hop_by_hop(headers: Iterable[Tuple[bytes, bytes]]) -> RawHeaders:
    """Drop hop-by-hop headers, including any named by ``Connection``."""

    headers = list(headers)
    dropped = set(HOP_BY_HOP)
    for name, value in headers:
        if name.lower() == b"connection":
            dropped.update(token.strip().lower() for token in value.decode("latin-1").split(",") if token.strip())
    return [(name, value) for name, value in headers if name.decode("latin-1").lower() not in dropped]


class Dispatcher:
    """Forward proxied requests to the upstream registered for their identifier."""

    def __init__(
        self,
        registry: Registry,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """The pooled upstream client, opened on first use unless one was injected."""

        if self._client is None or (self._owns_client and self._client.is_closed):
            self._client = httpx.AsyncClient(timeout=self.settings.upstream_timeout(), follow_redirects=False)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def resolve(self, path: str) -> Tuple[ProxyPath, Target]:
        """Parse ``path`` and look up its target; raises ``NotFoundError``."""

        proxy_path = parse_proxy_path(path, self.settings.proxy_prefix)
        return proxy_path, self.registry.find(proxy_path.identifier)

    async def dispatch(self, request: Request) -> Response:
        context = RequestContext.from_headers(request.headers, store=request.app.state.log_store)
        path = _raw_path(request)
        context.info(logger, "proxy request received", event="proxy.request_received", method=request.method, path=path)
        try:
            proxy_path, target = self.resolve(path)
        except NotFoundError as exc:
            context.info(logger, "proxy target not found", event="proxy.target_missing", path=path)
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": str(exc), "request_id": context.request_id},
            )
        context.with_identifier(target.identifier).with_upstream(target.url)

        try:
            return await self.forward(request, target, proxy_path, context)
        except UpstreamUnreachableError as exc:
            context.warning(
                logger,
                "upstream unreachable",
                event="proxy.upstream_unreachable",
                url=exc.url,
                error=exc.reason,
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={"detail": str(exc), "request_id": context.request_id},
            )

    async def forward(self, request: Request, target: Target, proxy_path: ProxyPath, context: RequestContext) -> Response:
        """Send ``request`` to ``target`` and stream the upstream response back."""

        url = build_upstream_url(target, proxy_path.remainder, request.scope.get("query_string", b""))
        headers = self._outgoing_headers(request)
        content = request.stream() if _has_body(request) else None

        client = self.client
        # Built directly so the client's default headers are not merged in.
        upstream_request = httpx.Request(
            request.method,
            url,
            headers=headers,
            content=content,
            extensions={"timeout": client.timeout.as_dict()},
        )
        context.info(logger, "forwarding request", event="proxy.forwarding", method=request.method, url=str(url))
        try:
            upstream_response = await client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            raise UpstreamUnreachableError(str(url), str(exc) or exc.__class__.__name__) from exc

        context.info(
            logger,
            "upstream responded",
            event="proxy.upstream_response",
            status_code=upstream_response.status_code,
        )

        async def relay() -> AsyncIterator[bytes]:
            try:
                if upstream_response.is_stream_consumed:
                    # Transports may hand back a response that is already read.
                    yield upstream_response.content
                    return
                async for chunk in upstream_response.aiter_raw():
                    yield chunk
            except httpx.HTTPError as exc:
                context.warning(logger, "upstream stream failed", event="proxy.stream_failed", error=str(exc))
                raise
            finally:
                await upstream_response.aclose()

        response = StreamingResponse(relay(), status_code=upstream_response.status_code)
        response.raw_headers.extend(strip_hop_by_hop(upstream_response.headers.raw))
        return response

    def _outgoing_headers(self, request: Request) -> RawHeaders:
        # httpx fills in Host from the upstream url.
        headers = [(name, value) for name, value in strip_hop_by_hop(request.headers.raw) if name.lower() != b"host"]
        if not self.settings.forwarded_headers:
            return headers

        existing = {name.lower(): value for name, value in headers}
        client_ip = request.client.host if request.client else "unknown"
        prior = existing.get(b"x-forwarded-for")
        forwarded_for = f"{prior.decode('latin-1')}, {client_ip}" if prior else client_ip
        headers = [(name, value) for name, value in headers if name.lower() != b"x-forwarded-for"]
        headers.append((b"x-forwarded-for", forwarded_for.encode("latin-1")))
        if b"x-forwarded-host" not in existing and "host" in request.headers:
            headers.append((b"x-forwarded-host", request.headers["host"].encode("latin-1")))
        if b"x-forwarded-proto" not in existing:
            headers.append((b"x-forwarded-proto", request.url.scheme.encode("latin-1")))
        return headers


def _raw_path(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if raw_path:
        # Some servers include the query string in raw_path.
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


__all__ = [
    "Dispatcher",
    "HOP_BY_HOP",
    "ProxyPath",
    "build_upstream_url",
    "parse_proxy_path",
    "strip_hop_by_hop",
]
