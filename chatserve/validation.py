"""Tag-driven validation of dataclass fields and single values.

Rules are attached to dataclass fields through field metadata under the key
``"validate"``, e.g. ``field(metadata={"validate": "required,oneof=2 3"})``.
Supported tags: required, omitempty, dive, gt, gte, lt, lte, min, max,
oneof, email, name, username and password.
"""

from __future__ import annotations

import operator
import re
import unicodedata
from collections.abc import Callable, Iterator
from dataclasses import dataclass, fields, is_dataclass
from typing import Any

from chatserve.errors import ValidationError

VALIDATE_METADATA_KEY = "validate"

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255

_NAME_RE = re.compile(r"[a-zA-Z ,.'-]+")
_USERNAME_RE = re.compile(r"[a-zA-Z0-9._-]+")
_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*"
)


def is_valid_name(value: Any) -> bool:
    """Letters, spaces and the characters , . ' - only."""
    return isinstance(value, str) and _NAME_RE.fullmatch(value) is not None


def is_valid_username(value: Any) -> bool:
    """Letters, digits and the characters . _ - only."""
    return isinstance(value, str) and _USERNAME_RE.fullmatch(value) is not None


def is_valid_password(value: Any) -> bool:
    """8 to 255 bytes with an upper, a lower, a digit and a special character."""
    if not isinstance(value, str):
        return False
    if not MIN_PASSWORD_LENGTH <= len(value.encode("utf-8")) <= MAX_PASSWORD_LENGTH:
        return False

    has_upper = has_lower = has_number = has_special = False
    for char in value:
        category = unicodedata.category(char)
        if category == "Lu":
            has_upper = True
        elif category == "Ll":
            has_lower = True
        elif category.startswith("N"):
            has_number = True
        elif category[0] in "PS":
            has_special = True
    return has_upper and has_lower and has_number and has_special


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, set, frozenset)):
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (str, bytes)):
        return len(value) > 0
    return True


def _measure(value: Any) -> float:
    if value is None:
        return 0
    if isinstance(value, (str, bytes, list, tuple, dict, set, frozenset)):
        return len(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    raise TypeError(f"cannot compare a value of type {type(value).__name__}")


def _comparison(op: Callable[[float, float], bool]) -> Callable[[Any, str], bool]:
    def check(value: Any, param: str) -> bool:
        return op(_measure(value), float(param))

    return check


def _one_of(value: Any, param: str) -> bool:
    return str(value) in param.split()


_RULES: dict[str, Callable[[Any, str], bool]] = {
    "gt": _comparison(operator.gt),
    "gte": _comparison(operator.ge),
    "min": _comparison(operator.ge),
    "lt": _comparison(operator.lt),
    "lte": _comparison(operator.le),
    "max": _comparison(operator.le),
    "oneof": _one_of,
    "email": lambda value, _param: isinstance(value, str) and _EMAIL_RE.fullmatch(value) is not None,
    "name": lambda value, _param: is_valid_name(value),
    "username": lambda value, _param: is_valid_username(value),
    "password": lambda value, _param: is_valid_password(value),
}


@dataclass(frozen=True)
class _FieldError:
    tag: str
    namespace: str
    field: str
    value: Any
    param: str

    @property
    def message(self) -> str:
        return (
            f"Key: '{self.namespace}' Error:Field validation for "
            f"'{self.field}' failed on the '{self.tag}' tag"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "tag": self.tag,
            "actualTag": self.tag,
            "namespace": self.namespace,
            "structNamespace": self.namespace,
            "field": self.field,
            "structField": self.field,
            "value": self.value,
            "param": self.param,
            "kind": type(self.value).__name__,
        }


class _FieldErrors(Exception):
    def __init__(self, errors: list[_FieldError]) -> None:
        super().__init__("\n".join(error.message for error in errors))
        self.errors = errors


def _parse_tags(tags: str) -> list[tuple[str, str]]:
    parsed = []
    for part in tags.split(","):
        part = part.strip()
        if part:
            name, _, param = part.partition("=")
            parsed.append((name, param))
    return parsed


def _apply(value: Any, tags: list[tuple[str, str]], namespace: str, field_name: str) -> Iterator[_FieldError]:
    for position, (tag, param) in enumerate(tags):
        if tag == "omitempty":
            if not _has_value(value):
                return
            continue
        if tag == "dive":
            rest = tags[position + 1 :]
            items = value.items() if isinstance(value, dict) else enumerate(value or ())
            for key, item in items:
                yield from _apply(item, rest, f"{namespace}[{key}]", f"{field_name}[{key}]")
            return
        if tag == "required":
            ok = _has_value(value)
        else:
            rule = _RULES.get(tag)
            if rule is None:
                raise ValueError(f"undefined validation function {tag!r}")
            ok = rule(value, param)
        if not ok:
            yield _FieldError(tag=tag, namespace=namespace, field=field_name, value=value, param=param)
            return


def _check_struct(obj: Any, prefix: str) -> Iterator[_FieldError]:
    for item in fields(obj):
        tags = item.metadata.get(VALIDATE_METADATA_KEY, "")
        if tags == "-":
            continue
        value = getattr(obj, item.name)
        namespace = f"{prefix}.{item.name}"
        if tags:
            yield from _apply(value, _parse_tags(tags), namespace, item.name)
        if is_dataclass(value) and not isinstance(value, type):
            yield from _check_struct(value, namespace)


class Validator:
    """Validates dataclasses and values, raising ValidationError on failure."""

    def struct(self, domain: str, obj: Any) -> None:
        if not is_dataclass(obj) or isinstance(obj, type):
            raise TypeError("struct validation needs a dataclass instance")
        errors = list(_check_struct(obj, type(obj).__name__))
        if errors:
            raise ValidationError(
                domain,
                _FieldErrors(errors),
                {"errors": [error.to_dict() for error in errors]},
            )

    def var(self, domain: str, value: Any, tags: str) -> None:
        errors = list(_apply(value, _parse_tags(tags), "", ""))
        if errors:
            raise ValidationError(domain, _FieldErrors(errors), None)