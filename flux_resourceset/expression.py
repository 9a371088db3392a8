"""Boolean expressions evaluated against the state of cluster objects.

The dependency readiness checks only need two operations: compile an
expression, and evaluate a compiled expression with a set of variables.
The default implementation uses the Common Expression Language.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any

import celpy
from celpy import celtypes

from .exceptions import ExpressionEvaluationError, InvalidExpressionError

__all__ = [
    "ExpressionEvaluator",
    "CelEvaluator",
]

_LOGGER = logging.getLogger(__name__)


class ExpressionEvaluator(ABC):
    """Interface for compiling and evaluating boolean expressions."""

    @abstractmethod
    def compile(self, expression: str) -> Any:
        """Compile the expression.

        Raises:
            InvalidExpressionError: If the expression can't be parsed.
        """

    @abstractmethod
    def evaluate(self, program: Any, variables: dict[str, Any]) -> bool:
        """Evaluate a compiled expression with the given variables.

        Raises:
            ExpressionEvaluationError: If evaluation fails or the result
                is not a boolean.
        """


class CelEvaluator(ExpressionEvaluator):
    """Evaluates CEL expressions, caching the compiled programs."""

    def __init__(self) -> None:
        """Initialize CelEvaluator."""
        self._env = celpy.Environment()
        self._programs: dict[str, celpy.Runner] = {}

    def compile(self, expression: str) -> celpy.Runner:
        if (program := self._programs.get(expression)) is not None:
            return program
        try:
            ast = self._env.compile(expression)
            program = self._env.program(ast)
        except celpy.CELParseError as err:
            raise InvalidExpressionError(expression, str(err)) from err
        _LOGGER.debug("Compiled expression %s", expression)
        self._programs[expression] = program
        return program

    def evaluate(self, program: celpy.Runner, variables: dict[str, Any]) -> bool:
        activation = {
            name: celpy.json_to_cel(value) for name, value in variables.items()
        }
        try:
            result = program.evaluate(activation)
        except celpy.CELEvalError as err:
            raise ExpressionEvaluationError(
                f"failed to evaluate expression: {err}"
            ) from err
        if isinstance(result, celpy.CELEvalError):
            raise ExpressionEvaluationError(f"failed to evaluate expression: {result}")
        if not isinstance(result, celtypes.BoolType):
            raise ExpressionEvaluationError(
                f"expression result is {type(result).__name__}, expected bool"
            )
        return bool(result)
