"""FastAPI application exposing the proxy registry and the /proxy path space."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from . import __version__
from .config import Settings, get_settings
from .schemas import ProxyEntry, ProxyList, RegisterProxyRequest
from .services.dispatcher import Dispatcher
from .services.errors import InvalidIdentifierError, NotFoundError, ParseError
from .services.logging import RequestContext, RequestLogStore
from .services.registry import Registry

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def get_registry(request: Request) -> Registry:
    return request.app.state.registry


def get_log_store(request: Request) -> RequestLogStore:
    return request.app.state.log_store


def create_app(
    settings: Settings | None = None,
    registry: Registry | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    """Build the application around an owned registry.

    ``registry`` and ``dispatcher`` may be injected, e.g. a dispatcher bound to
    an ``httpx.AsyncClient`` with a mock transport in tests. Proxy milestones
    are recorded in the app's own log store either way. A dispatcher without an
    injected client gets one pooled client, closed on shutdown.
    """

    settings = settings or get_settings()
    registry = registry if registry is not None else Registry()
    log_store = RequestLogStore(max_requests=settings.request_log_limit)
    if dispatcher is None:
        dispatcher = Dispatcher(registry, settings=settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await dispatcher.aclose()

    app = FastAPI(title="Reverser", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.log_store = log_store

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        context = RequestContext.from_headers(request.headers, store=log_store)
        context.warning(
            logger,
            "request validation failed",
            event="request.validation_error",
            path=str(request.url.path),
            errors=jsonable_errors(exc),
        )
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(exc), "request_id": context.request_id},
        )

    @app.get("/api/proxies", response_model=ProxyList)
    async def list_proxies(registry: Registry = Depends(get_registry)) -> ProxyList:
        snapshot = registry.list()
        entries = [ProxyEntry.from_target(snapshot[path]) for path in sorted(snapshot)]
        return ProxyList(proxies=entries, count=len(entries))

    @app.post("/api/proxies", response_model=ProxyEntry, status_code=status.HTTP_201_CREATED)
    async def register_proxy(
        payload: RegisterProxyRequest,
        request: Request,
        registry: Registry = Depends(get_registry),
    ) -> ProxyEntry:
        context = RequestContext.from_headers(request.headers, store=log_store).with_identifier(payload.path)
        context.info(logger, "proxy registration requested", event="registry.register_requested", target=payload.target)
        try:
            target = registry.register(payload.target, payload.path)
        except (ParseError, InvalidIdentifierError) as exc:
            context.warning(logger, "proxy registration rejected", event="registry.register_rejected", error=str(exc))
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        context.with_upstream(target.url).info(logger, "proxy registered", event="registry.registered")
        return ProxyEntry.from_target(target)

    @app.get("/api/proxies/{path}", response_model=ProxyEntry)
    async def get_proxy(path: str, registry: Registry = Depends(get_registry)) -> ProxyEntry:
        try:
            target = registry.find(path)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return ProxyEntry.from_target(target)

    @app.delete("/api/proxies/{path}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
    async def unregister_proxy(
        path: str,
        request: Request,
        missing_ok: bool = Query(default=False),
        registry: Registry = Depends(get_registry),
    ) -> Response:
        context = RequestContext.from_headers(request.headers, store=log_store).with_identifier(path)
        try:
            registry.unregister(path)
        except NotFoundError as exc:
            context.info(logger, "proxy unregister for unknown path", event="registry.unregister_missing")
            if not missing_ok:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        else:
            context.info(logger, "proxy unregistered", event="registry.unregistered")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/requests/{request_id}/logs")
    async def get_request_logs(request_id: str, store: RequestLogStore = Depends(get_log_store)) -> dict:
        """Developer-facing helper to inspect the recorded milestones."""

        return {"request_id": request_id, "logs": store.get(request_id)}

    @app.api_route(f"{settings.proxy_prefix}/{{proxy_path:path}}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        return await request.app.state.dispatcher.dispatch(request)

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic error contexts may hold exception instances.
    return [{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]


app = create_app()
