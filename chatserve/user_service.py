"""Client for the external user service that owns accounts and profiles."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from chatserve.domain import User, UserFilter
from chatserve.dto import UserDto, user_from_dto
from chatserve.errors import USER_DOMAIN, BadRequestError, UnauthorizedError, UndefinedError


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _decode_object(content: bytes) -> dict[str, Any]:
    """Decode a JSON object; null decodes to an empty object."""
    payload = json.loads(content)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("response body must be a JSON object")
    return payload


def _filter_params(user_filter: UserFilter) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    params.extend(("ids", str(user_id)) for user_id in user_filter.ids)
    params.extend(("emails", email) for email in user_filter.emails)
    params.extend(("usernames", username) for username in user_filter.usernames)
    if user_filter.search:
        params.append(("search", user_filter.search))
    if user_filter.limit is not None:
        params.append(("limit", str(user_filter.limit)))
    if user_filter.offset is not None:
        params.append(("offset", str(user_filter.offset)))
    if user_filter.sort is not None:
        params.append(("sort", f"{user_filter.sort.sort_by},{user_filter.sort.sort_dir}"))
    # Keys are sent in sorted order; values of one key keep their order.
    return sorted(params, key=lambda item: item[0])


class UserService:
    """Fetches the current user and user lists over HTTP with a bearer token."""

    def __init__(
        self,
        current_user_endpoint: str,
        users_endpoint: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.current_user_endpoint = current_user_endpoint
        self.users_endpoint = users_endpoint
        self._client = client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    async def get_current_user(self, token: str) -> User:
        """Return the user the token belongs to; raises UnauthorizedError if none."""
        async with self._http() as client:
            response = await client.get(self.current_user_endpoint, headers=_auth_headers(token))

        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise UnauthorizedError()
        if response.status_code == httpx.codes.NOT_FOUND:
            raise UndefinedError(
                RuntimeError("invalid get current user endpoint"),
                "endpoint",
                self.current_user_endpoint,
            )

        dto = UserDto.from_dict(_decode_object(response.content))
        if dto.id == 0:
            raise UnauthorizedError()
        return user_from_dto(dto)

    async def get_users(self, token: str, user_filter: UserFilter) -> tuple[list[User], int]:
        """Return the users matching the filter and the total count."""
        async with self._http() as client:
            response = await client.get(
                self.users_endpoint,
                params=_filter_params(user_filter),
                headers=_auth_headers(token),
            )

        if response.status_code == httpx.codes.BAD_REQUEST:
            raise BadRequestError(USER_DOMAIN, None, {"body": response.text})
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise UnauthorizedError()

        page = _decode_object(response.content)
        items = page.get("items") or []
        if not isinstance(items, list):
            raise ValueError("page items must be a list")
        users = [user_from_dto(UserDto.from_dict(item)) for item in items]
        return users, int(page.get("count") or 0)


class UserServiceContract:
    """The part of the user service other domains are allowed to use."""

    def __init__(self, user_service: UserService) -> None:
        self._user_service = user_service

    async def get_users(self, token: str, user_filter: UserFilter) -> tuple[list[User], int]:
        return await self._user_service.get_users(token, user_filter)