"""Filters that transform input values inside template placeholders.

A placeholder such as `<< inputs.version | slugify >>` passes the resolved
input value through each named filter from left to right. Filters receive
and return typed values so that `int` can produce a bare integer in the
rendered object.
"""

from collections.abc import Callable, Iterable
import json
import re
from typing import Any

from .exceptions import InvalidFilterError

__all__ = [
    "FilterFunc",
    "register_filter",
    "get_filter",
    "apply_filters",
    "to_text",
]

FilterFunc = Callable[[Any], Any]

_INT_PATTERN = re.compile(r"^[+-]?[0-9]+$")
_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")

_FILTERS: dict[str, FilterFunc] = {}


def register_filter(name: str) -> Callable[[FilterFunc], FilterFunc]:
    """Decorator that makes a filter available to templates under `name`."""

    def decorator(func: FilterFunc) -> FilterFunc:
        _FILTERS[name] = func
        return func

    return decorator


def get_filter(name: str) -> FilterFunc:
    """Return the filter registered with the given name."""
    if (func := _FILTERS.get(name)) is None:
        raise InvalidFilterError(f"unknown filter '{name}'")
    return func


def to_text(value: Any) -> str:
    """Return the textual form of an input value as it appears in a manifest."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def apply_filters(value: Any, names: Iterable[str]) -> Any:
    """Run the value through the filter pipeline."""
    for name in names:
        value = get_filter(name)(value)
    return value


@register_filter("quote")
def quote(value: Any) -> str:
    """Keep the value a string scalar, e.g. `>=1.0.0` or `"2"`."""
    return to_text(value)


@register_filter("int")
def to_int(value: Any) -> int:
    """Coerce the value to an integer."""
    if isinstance(value, bool):
        raise InvalidFilterError(f"int filter can't convert boolean '{value}'")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidFilterError(f"int filter can't convert '{value}'")
        return int(value)
    text = to_text(value).strip()
    if not _INT_PATTERN.match(text):
        raise InvalidFilterError(f"int filter can't convert '{value}'")
    return int(text)


@register_filter("slugify")
def slugify(value: Any) -> str:
    """Lowercase the value and replace runs outside `[a-z0-9]` with `-`."""
    return _SLUG_SEPARATORS.sub("-", to_text(value).lower()).strip("-")


@register_filter("lower")
def lower(value: Any) -> str:
    return to_text(value).lower()


@register_filter("upper")
def upper(value: Any) -> str:
    return to_text(value).upper()


@register_filter("trim")
def trim(value: Any) -> str:
    return to_text(value).strip()
