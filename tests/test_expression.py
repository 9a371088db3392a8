"""Tests for CEL expression evaluation."""

import re
from typing import Any

import pytest

from flux_resourceset.exceptions import (
    ExpressionEvaluationError,
    InvalidExpressionError,
)
from flux_resourceset.expression import CelEvaluator

VARIABLES = {
    "metadata": {"name": "podinfo", "generation": 2},
    "spec": {"replicas": 3},
    "status": {
        "observedGeneration": 2,
        "readyReplicas": 3,
        "conditions": [
            {"type": "Ready", "status": "True"},
            {"type": "Healthy", "status": "False"},
        ],
    },
}


@pytest.fixture(name="evaluator")
def evaluator_fixture() -> CelEvaluator:
    return CelEvaluator()


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("status.readyReplicas == spec.replicas", True),
        ("metadata.generation == status.observedGeneration", True),
        ("status.readyReplicas > 3", False),
        ("metadata.name == 'podinfo'", True),
        (
            "status.conditions.filter(c, c.type == 'Ready').all(c, c.status == 'True')",
            True,
        ),
        (
            "status.conditions.exists(c, c.type == 'Healthy' && c.status == 'True')",
            False,
        ),
    ],
)
def test_evaluate(evaluator: CelEvaluator, expression: str, expected: bool) -> None:
    """Test evaluating boolean expressions."""
    program = evaluator.compile(expression)
    assert evaluator.evaluate(program, VARIABLES) is expected


def test_compile_cached(evaluator: CelEvaluator) -> None:
    """Test that compiled programs are reused."""
    expression = "status.readyReplicas == spec.replicas"
    assert evaluator.compile(expression) is evaluator.compile(expression)


def test_invalid_expression(evaluator: CelEvaluator) -> None:
    """Test an expression that can't be parsed."""
    with pytest.raises(
        InvalidExpressionError,
        match=re.escape("failed to parse expression 'status.ready =='"),
    ) as exc_info:
        evaluator.compile("status.ready ==")
    assert exc_info.value.expression == "status.ready =="


@pytest.mark.parametrize(
    ("expression", "variables"),
    [
        ("status.readyReplicas", VARIABLES),
        ("metadata.name", VARIABLES),
        ("status.missing == 'value'", VARIABLES),
        ("status.readyReplicas == spec.replicas", {"status": {}, "spec": {}}),
    ],
)
def test_evaluation_error(
    evaluator: CelEvaluator, expression: str, variables: dict[str, Any]
) -> None:
    """Test expressions that fail or don't evaluate to a boolean."""
    program = evaluator.compile(expression)
    with pytest.raises(ExpressionEvaluationError):
        evaluator.evaluate(program, variables)
