"""Wire representations of users and pages, and sort parsing."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from chatserve.domain import Image, Sort, SortDirection, User

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T]
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.items],
            "count": self.count,
        }


@dataclass
class UserDto:
    id: int = 0
    email: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    about_me: str = ""
    image: Image = field(default_factory=Image)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "aboutMe": self.about_me,
            "image": self.image.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UserDto:
        return cls(
            id=int(data.get("id") or 0),
            email=data.get("email") or "",
            username=data.get("username") or "",
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            about_me=data.get("aboutMe") or "",
            image=Image.from_dict(data.get("image")),
        )


def user_to_dto(user: User) -> UserDto:
    return UserDto(
        id=user.id,
        email=user.email,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        about_me=user.about_me,
        image=user.image,
    )


def user_from_dto(dto: UserDto) -> User:
    return User(
        id=dto.id,
        email=dto.email,
        username=dto.username,
        first_name=dto.first_name,
        last_name=dto.last_name,
        about_me=dto.about_me,
        image=dto.image,
    )


def sort_from_dto(query_sort: str, sort_fields: Sequence[str]) -> Sort | None:
    """Parse "field[,direction]"; return None for an empty string.

    Raises ValueError for an unknown field or direction.
    """
    if not query_sort:
        return None

    parts = query_sort.split(",")
    sort = Sort(sort_by=parts[0], sort_dir=SortDirection.ASC)
    if sort.sort_by not in sort_fields:
        raise ValueError("invalid sort field")

    if len(parts) > 1:
        try:
            sort.sort_dir = SortDirection(parts[1].lower())
        except ValueError:
            raise ValueError("invalid sort direction") from None

    return sort