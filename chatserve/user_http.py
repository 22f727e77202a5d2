"""HTTP endpoints for users, the authentication guard and query parsing."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import BaseRoute, Route

from chatserve.domain import User, UserFilter
from chatserve.dto import Page, sort_from_dto, user_to_dto
from chatserve.errors import (
    USER_DOMAIN,
    BadRequestError,
    UnauthorizedError,
    UserNotFoundError,
    ValidationError,
)
from chatserve.validation import VALIDATE_METADATA_KEY, Validator

AUTH_TOKEN_QUERY_PARAM = "token"
HEADER_AUTHORIZATION = "Authorization"
BEARER_TOKEN_TYPE = "Bearer"

USER_SORT_FIELDS = ("id", "email", "username", "role", "firstName", "lastName")

_UINT64_LIMIT = 2**64
_UINT8_LIMIT = 2**8
_UINT_RE = re.compile(r"[0-9]+")


def _parse_uint(text: str, name: str, limit: int = _UINT64_LIMIT) -> int:
    if _UINT_RE.fullmatch(text) is None or int(text) >= limit:
        raise ValueError(f"invalid value {text!r} for {name}")
    return int(text)


def _values(params: Any, key: str) -> list[str]:
    getlist = getattr(params, "getlist", None)
    if callable(getlist):
        return [str(value) for value in getlist(key)]
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def _first(params: Any, key: str) -> str:
    values = _values(params, key)
    return values[0] if values else ""


def _optional_uint(params: Any, key: str) -> int | None:
    text = _first(params, key)
    return _parse_uint(text, key) if text else None


@dataclass
class UserQuery:
    ids: list[int] = field(default_factory=list, metadata={VALIDATE_METADATA_KEY: "omitempty,dive,gte=0"})
    emails: list[str] = field(default_factory=list, metadata={VALIDATE_METADATA_KEY: "omitempty,dive,email"})
    usernames: list[str] = field(
        default_factory=list, metadata={VALIDATE_METADATA_KEY: "omitempty,dive,gte=1,lte=255"}
    )
    roles: list[int] = field(default_factory=list, metadata={VALIDATE_METADATA_KEY: "omitempty,dive,oneof=1 2"})
    search: str = ""
    limit: int | None = None
    offset: int | None = None
    sort: str = ""

    @classmethod
    def from_params(cls, params: Any) -> UserQuery:
        """Build from query parameters; raises ValueError on malformed numbers."""
        return cls(
            ids=[_parse_uint(value, "ids") for value in _values(params, "ids")],
            emails=_values(params, "emails"),
            usernames=_values(params, "usernames"),
            roles=[_parse_uint(value, "roles", _UINT8_LIMIT) for value in _values(params, "roles")],
            search=_first(params, "search"),
            limit=_optional_uint(params, "limit"),
            offset=_optional_uint(params, "offset"),
            sort=_first(params, "sort"),
        )


def user_filter_from_query(query: UserQuery) -> UserFilter:
    """Turn a parsed query into a filter; raises BadRequestError on a bad sort."""
    try:
        sort = sort_from_dto(query.sort, USER_SORT_FIELDS)
    except ValueError as err:
        raise BadRequestError(USER_DOMAIN, err, {"sort": query.sort}) from err

    return UserFilter(
        ids=list(query.ids),
        emails=list(query.emails),
        usernames=list(query.usernames),
        search=query.search,
        limit=query.limit,
        offset=query.offset,
        sort=sort,
    )


class AuthMiddleware:
    """Resolves the caller from a token in the query or a bearer header."""

    def __init__(self, user_service: Any) -> None:
        self._user_service = user_service

    async def authenticate(self, request: Request) -> User:
        """Store the token and user on request.state and return the user."""
        token = request.query_params.get(AUTH_TOKEN_QUERY_PARAM, "")
        if not token:
            token = self._token_from_header(request)
        if not token:
            raise UnauthorizedError("invalid token")

        request.state.token = token
        user = await self._user_service.get_current_user(token)
        if user is None or user.id == 0:
            raise UnauthorizedError("user not found")

        request.state.user = user
        return user

    @staticmethod
    def _token_from_header(request: Request) -> str:
        header = request.headers.get(HEADER_AUTHORIZATION, "")
        if not header:
            raise UnauthorizedError("invalid token")

        parts = header.split(" ")
        if len(parts) < 2:
            raise UnauthorizedError("invalid token")
        if parts[0].lower() != BEARER_TOKEN_TYPE.lower():
            raise UnauthorizedError("invalid token type")
        return parts[1]


class UserController:
    """Routes under /users, all guarded by the authentication middleware."""

    def __init__(self, validator: Validator, auth_middleware: AuthMiddleware, user_service: Any) -> None:
        self._validator = validator
        self._auth = auth_middleware
        self._user_service = user_service

    def routes(self) -> Sequence[BaseRoute]:
        return [
            Route("/users/current", self._get_current_user, methods=["GET"]),
            Route("/users", self._get_users, methods=["GET"]),
            Route("/users/{user_id}", self._get_user, methods=["GET"]),
        ]

    async def _get_current_user(self, request: Request) -> Response:
        await self._auth.authenticate(request)
        user = await self._user_service.get_current_user(request.state.token)
        if user is None:
            raise UserNotFoundError(None)
        return JSONResponse(user_to_dto(user).to_dict())

    async def _get_users(self, request: Request) -> Response:
        await self._auth.authenticate(request)
        try:
            query = UserQuery.from_params(request.query_params)
        except ValueError as err:
            raise BadRequestError(USER_DOMAIN, err, None) from err

        try:
            self._validator.struct(USER_DOMAIN, query)
        except ValidationError as err:
            raise ValidationError(USER_DOMAIN, err, None) from err

        user_filter = user_filter_from_query(query)
        users, count = await self._user_service.get_users(request.state.token, user_filter)
        return JSONResponse(Page([user_to_dto(user) for user in users], count).to_dict())

    async def _get_user(self, request: Request) -> Response:
        await self._auth.authenticate(request)
        id_text = request.path_params["user_id"]
        try:
            user_id = _parse_uint(id_text, "id")
        except ValueError as err:
            raise BadRequestError(USER_DOMAIN, err, {"id": id_text}) from err

        users, _count = await self._user_service.get_users(request.state.token, UserFilter(ids=[user_id]))
        if not users:
            raise UserNotFoundError({"id": user_id})
        return JSONResponse(user_to_dto(users[0]).to_dict())