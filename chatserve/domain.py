"""Core domain records shared across the service."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class Image:
    url: str = ""
    base64: str = ""

    def to_dict(self) -> dict[str, str]:
        """Serialise, omitting empty fields."""
        out: dict[str, str] = {}
        if self.url:
            out["url"] = self.url
        if self.base64:
            out["base64"] = self.base64
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Image:
        data = data or {}
        return cls(url=data.get("url") or "", base64=data.get("base64") or "")


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"

    def __str__(self) -> str:
        return self.value


@dataclass
class Sort:
    sort_by: str
    sort_dir: SortDirection = SortDirection.ASC


@dataclass
class User:
    id: int = 0
    email: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    about_me: str = ""
    image: Image = field(default_factory=Image)


@dataclass
class UserFilter:
    ids: list[int] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    usernames: list[str] = field(default_factory=list)
    search: str = ""
    limit: int | None = None
    offset: int | None = None
    sort: Sort | None = None


def user_from_context(ctx: Mapping[str, Any]) -> User:
    """Return the authenticated user stored in a request context."""
    user = ctx["user"]
    if not isinstance(user, User):
        raise TypeError("context value 'user' is not a User")
    return user


def token_from_context(ctx: Mapping[str, Any]) -> str:
    """Return the auth token stored in a request context."""
    token = ctx["token"]
    if not isinstance(token, str):
        raise TypeError("context value 'token' is not a string")
    return token