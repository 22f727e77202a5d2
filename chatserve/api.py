"""HTTP application: routing, access logging, CORS and structured error responses."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from enum import Enum
from typing import Any, Protocol

import uvicorn
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware as StarletteMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import BaseRoute, Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from chatserve.errors import (
    COMMON_DOMAIN,
    SERVICE_NAME,
    BadRequestError,
    ErrorData,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    UndefinedError,
    UserNotFoundError,
    ValidationError,
    truncate_error_data,
)

SHUTDOWN_TIMEOUT = 60
_CORS_METHODS = ["GET", "POST", "HEAD", "PUT", "DELETE", "PATCH"]

ErrorResponder = Callable[[Request, Exception], Awaitable[Response]]


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"

    def __str__(self) -> str:
        return self.value


class ServerAlreadyStartedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("server already started")


class Controller(Protocol):
    """Something that contributes routes to the application."""

    def routes(self) -> Sequence[BaseRoute]: ...


class Middleware(Protocol):
    """A request guard run before a group of routes."""

    async def authenticate(self, request: Request) -> Any: ...


def status_for_error(error: BaseException) -> int:
    """Return the HTTP status code a raised error maps to."""
    if isinstance(error, HTTPException):
        return error.status_code
    if isinstance(error, (BadRequestError, ValidationError)):
        return 400
    if isinstance(error, UnauthorizedError):
        return 401
    if isinstance(error, ForbiddenError):
        return 403
    if isinstance(error, (NotFoundError, UserNotFoundError)):
        return 404
    return 500


def _as_error_data(error: BaseException, status: int) -> ErrorData:
    if isinstance(error, HTTPException):
        if status == 404:
            return NotFoundError(COMMON_DOMAIN)
        return UndefinedError(error)
    if isinstance(error, ErrorData):
        return error
    return UndefinedError(error)


def _json_response(status: int, body: Any) -> Response:
    return Response(
        content=json.dumps(body, default=str),
        status_code=status,
        media_type="application/json",
    )


def error_handler(log: logging.Logger, environment: Environment | str) -> ErrorResponder:
    """Build the coroutine that turns a raised error into a JSON response."""

    async def handle(request: Request, exc: Exception) -> Response:
        status = status_for_error(exc)
        error = _as_error_data(exc, status)
        error.data["path"] = f"{request.method} {request.url}"

        serialized = str(error)
        if status < 500:
            log.debug("%s", serialized)
        else:
            log.error("%s", serialized)

        if environment != Environment.DEVELOPMENT:
            return _json_response(status, truncate_error_data(error))
        return _json_response(status, error.to_dict())

    return handle


class _ErrorMiddleware:
    """Catches anything raised below it and answers through the error handler."""

    def __init__(self, app: ASGIApp, handler: ErrorResponder) -> None:
        self.app = app
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, tracking_send)
        except Exception as exc:
            if started:
                raise
            response = await self.handler(Request(scope, receive), exc)
            await response(scope, receive, send)


class _AccessLogMiddleware:
    """Writes one JSON line per HTTP request at info level."""

    def __init__(self, app: ASGIApp, log: logging.Logger) -> None:
        self.app = app
        self.log = log

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status = 500
        began = time.perf_counter()

        async def recording_send(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, recording_send)
        finally:
            url = scope.get("path", "")
            query = scope.get("query_string", b"")
            if query:
                url += "?" + query.decode("latin-1")
            client = scope.get("client")
            entry = {
                "status": status,
                "latency": f"{(time.perf_counter() - began) * 1000:.3f}ms",
                "method": scope.get("method", ""),
                "url": url,
                "ip": client[0] if client else "",
            }
            self.log.info("%s", json.dumps(entry))


def create_app(
    log: logging.Logger,
    environment: Environment | str,
    version: str,
    controllers: Iterable[Controller] = (),
) -> Starlette:
    """Assemble the application with the service routes and every controller's routes."""

    async def root(request: Request) -> Response:
        return JSONResponse({"service": SERVICE_NAME, "version": version})

    async def healthz(request: Request) -> Response:
        return PlainTextResponse("OK")

    routes: list[BaseRoute] = [
        Route("/", root, methods=["GET"]),
        Route("/healthz", healthz, methods=["GET"]),
    ]
    for controller in controllers:
        routes.extend(controller.routes())

    handler = error_handler(log, environment)
    return Starlette(
        routes=routes,
        middleware=[
            StarletteMiddleware(_AccessLogMiddleware, log=log),
            StarletteMiddleware(CORSMiddleware, allow_origins=["*"], allow_methods=_CORS_METHODS),
            StarletteMiddleware(_ErrorMiddleware, handler=handler),
        ],
        exception_handlers={HTTPException: handler},
    )


class HTTPServer:
    """Runs an ASGI application with uvicorn; only one run at a time."""

    def __init__(self, app: ASGIApp, host: str = "0.0.0.0", port: int = 8080) -> None:
        self.app = app
        self.host = host
        self.port = port
        self._server: uvicorn.Server | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.started

    async def start(self) -> None:
        """Serve until stop() is called; raises if already serving."""
        if self._started:
            raise ServerAlreadyStartedError()
        self._started = True
        try:
            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_config=None,
                timeout_graceful_shutdown=SHUTDOWN_TIMEOUT,
            )
            self._server = uvicorn.Server(config)
            await self._server.serve()
        finally:
            self._server = None
            self._started = False

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True


async def _wait_until(predicate: Callable[[], bool], timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True