import asyncio
import json
import logging

import pytest
from starlette.exceptions import HTTPException
from starlette.routing import Route
from starlette.testclient import TestClient

from chatserve.api import (
    Environment,
    HTTPServer,
    ServerAlreadyStartedError,
    create_app,
    status_for_error,
)
from chatserve.errors import (
    COMMON_DOMAIN,
    SERVICE_NAME,
    USER_DOMAIN,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    UndefinedError,
    UserNotFoundError,
    ValidationError,
)


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _logger():
    log = logging.Logger("test-api", logging.DEBUG)
    handler = _ListHandler()
    log.addHandler(handler)
    return log, handler


class _FailingController:
    def __init__(self, error):
        self.error = error

    def routes(self):
        async def fail(request):
            raise self.error

        return [Route("/fail", fail, methods=["GET"])]


def _client(environment, controllers=(), version="1.2.3"):
    log, handler = _logger()
    app = create_app(log, environment, version, list(controllers))
    return TestClient(app), handler


@pytest.mark.parametrize(
    "error, status",
    [
        (BadRequestError(USER_DOMAIN, None, None), 400),
        (ValidationError(USER_DOMAIN, None, None), 400),
        (UnauthorizedError(), 401),
        (ForbiddenError(), 403),
        (NotFoundError(USER_DOMAIN), 404),
        (UserNotFoundError(None), 404),
        (UndefinedError(None), 500),
        (RuntimeError("boom"), 500),
        (HTTPException(status_code=404), 404),
        (HTTPException(status_code=405), 405),
    ],
)
def test_status_for_error(error, status):
    assert status_for_error(error) == status


def test_root_reports_service_and_version():
    client, _ = _client(Environment.PRODUCTION, version="1.2.3")
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"service": SERVICE_NAME, "version": "1.2.3"}


def test_healthz_is_ok():
    client, _ = _client(Environment.PRODUCTION)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "OK"


def test_unknown_route_is_not_found_error():
    client, _ = _client(Environment.PRODUCTION)
    response = client.get("/missing")
    assert response.status_code == 404
    body = response.json()
    assert body["type"] == "NotFoundError"
    assert body["domain"] == COMMON_DOMAIN
    assert body["data"]["path"] == "GET http://testserver/missing"


def test_production_body_is_truncated():
    error = UnauthorizedError("invalid token")
    client, _ = _client(Environment.PRODUCTION, [_FailingController(error)])
    response = client.get("/fail")
    assert response.status_code == 401
    body = response.json()
    assert set(body) == {"domain", "type", "data"}
    assert body["type"] == "UnauthorizedError"


def test_development_body_keeps_dev_details():
    error = UnauthorizedError("invalid token")
    client, _ = _client(Environment.DEVELOPMENT, [_FailingController(error)])
    body = client.get("/fail").json()
    assert body["devDetails"] == ["invalid token"]
    assert body["data"]["path"] == "GET http://testserver/fail"


def test_unexpected_error_becomes_undefined_in_production():
    client, _ = _client(Environment.PRODUCTION, [_FailingController(RuntimeError("boom"))])
    response = client.get("/fail")
    assert response.status_code == 500
    body = response.json()
    assert body["type"] == "UndefinedError"
    assert "errorMessage" not in body["data"]
    assert "stack" not in body["data"]


def test_unexpected_error_keeps_message_in_development():
    client, _ = _client(Environment.DEVELOPMENT, [_FailingController(RuntimeError("boom"))])
    body = client.get("/fail").json()
    assert body["data"]["errorMessage"] == "boom"
    assert "stack" in body["data"]


def test_client_errors_log_at_debug_and_server_errors_at_error():
    client, handler = _client(Environment.PRODUCTION, [_FailingController(ForbiddenError())])
    client.get("/fail")
    error_logs = [r for r in handler.records if "ForbiddenError" in r.getMessage()]
    assert [r.levelno for r in error_logs] == [logging.DEBUG]

    client, handler = _client(Environment.PRODUCTION, [_FailingController(RuntimeError("x"))])
    client.get("/fail")
    error_logs = [r for r in handler.records if "UndefinedError" in r.getMessage()]
    assert [r.levelno for r in error_logs] == [logging.ERROR]


def test_access_log_line():
    client, handler = _client(Environment.PRODUCTION)
    client.get("/healthz?probe=1")
    lines = [json.loads(r.getMessage()) for r in handler.records if r.levelno == logging.INFO]
    assert len(lines) == 1
    assert lines[0]["status"] == 200
    assert lines[0]["method"] == "GET"
    assert lines[0]["url"] == "/healthz?probe=1"
    assert lines[0]["latency"].endswith("ms")


def test_cors_allows_any_origin():
    client, _ = _client(Environment.PRODUCTION)
    response = client.get("/healthz", headers={"Origin": "http://example.com"})
    assert response.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
async def test_server_refuses_second_start():
    log, _ = _logger()
    server = HTTPServer(create_app(log, Environment.PRODUCTION, "1"), host="127.0.0.1", port=0)
    task = asyncio.create_task(server.start())
    try:
        for _ in range(500):
            if server.running:
                break
            await asyncio.sleep(0.01)
        assert server.running
        with pytest.raises(ServerAlreadyStartedError):
            await server.start()
    finally:
        server.stop()
        await asyncio.wait_for(task, timeout=10)
    assert server.running is False