"""Tests for the template filters."""

from collections.abc import Generator
from typing import Any

import pytest

from flux_resourceset.exceptions import InvalidFilterError
from flux_resourceset.filters import (
    _FILTERS,
    FilterFunc,
    apply_filters,
    get_filter,
    register_filter,
    to_text,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("text", "text"),
        (2, "2"),
        (1.5, "1.5"),
        (True, "true"),
        (False, "false"),
        (None, ""),
        ({"a": 1}, '{"a":1}'),
        ([1, "b"], '[1,"b"]'),
    ],
)
def test_to_text(value: Any, expected: str) -> None:
    """Test the text form of input values."""
    assert to_text(value) == expected


@pytest.mark.parametrize(
    ("value", "filters", "expected"),
    [
        ("1.0.0-rc.0", ["slugify"], "1-0-0-rc-0"),
        ("Team One!", ["slugify"], "team-one"),
        ("1,000", ["slugify"], "1-000"),
        ("Café", ["slugify"], "caf"),
        ("Straße", ["slugify"], "stra-e"),
        ("a&amp;b", ["slugify"], "a-amp-b"),
        ("ÀÉ x", ["slugify"], "x"),
        ("--Edge--", ["slugify"], "edge"),
        (">=1.0.0-rc.0", ["quote"], ">=1.0.0-rc.0"),
        (2, ["quote"], "2"),
        ("2", ["int"], 2),
        (" 42 ", ["int"], 42),
        ("-7", ["int"], -7),
        ("+8", ["int"], 8),
        (3, ["int"], 3),
        (4.0, ["int"], 4),
        ("2", ["int", "quote"], "2"),
        ("MiXeD", ["lower"], "mixed"),
        ("MiXeD", ["upper"], "MIXED"),
        ("  padded  ", ["trim"], "padded"),
        ("  Team One ", ["trim", "upper"], "TEAM ONE"),
        ("unchanged", [], "unchanged"),
    ],
)
def test_apply_filters(value: Any, filters: list[str], expected: Any) -> None:
    """Test filter pipelines applied left to right."""
    assert apply_filters(value, filters) == expected


@pytest.mark.parametrize(
    ("value"),
    ["abc", "1.5", 1.5, True, None, "3_000", "0x10", "", "1 2"],
)
def test_int_filter_invalid(value: Any) -> None:
    """Test values that can't be converted to an integer."""
    with pytest.raises(InvalidFilterError, match="int filter can't convert"):
        apply_filters(value, ["int"])


def test_unknown_filter() -> None:
    """Test that an unknown filter name is an error."""
    with pytest.raises(InvalidFilterError, match="unknown filter 'reverse'"):
        get_filter("reverse")
    with pytest.raises(InvalidFilterError, match="unknown filter 'reverse'"):
        apply_filters("value", ["quote", "reverse"])


@pytest.fixture(name="filters")
def mock_filters() -> Generator[dict[str, FilterFunc], None, None]:
    """Restore the filter registry after a test registers filters."""
    saved = dict(_FILTERS)
    yield _FILTERS
    _FILTERS.clear()
    _FILTERS.update(saved)


def test_register_filter(filters: dict[str, FilterFunc]) -> None:
    """Test registering a new filter."""

    @register_filter("test-double")
    def double(value: Any) -> str:
        return to_text(value) * 2

    assert filters["test-double"] is double
    assert get_filter("test-double") is double
    assert apply_filters("ab", ["test-double"]) == "abab"
