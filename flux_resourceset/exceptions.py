"""Exceptions related to flux-resourceset."""

__all__ = [
    "FluxException",
    "InputException",
    "TemplateException",
    "UndefinedInputError",
    "InvalidFilterError",
    "InvalidOutputError",
    "InvalidExpressionError",
    "ExpressionEvaluationError",
    "CopyFromError",
    "ImpersonationError",
    "ObjectNotFoundError",
    "ConflictError",
    "ApplyError",
    "PruneError",
    "ReconcileError",
]


class FluxException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxException):
    """Raised when the input files or values are not formatted as expected."""


class TemplateException(InputException):
    """Raised when the resource templates can't be rendered."""


class UndefinedInputError(TemplateException):
    """Raised when a placeholder references an input that is not defined."""

    def __init__(self, template_index: int, input_index: int, path: str) -> None:
        super().__init__(
            f"failed to render resource at index {template_index} with inputs "
            f"at index {input_index}: undefined input '{path}'"
        )
        self.template_index = template_index
        self.input_index = input_index
        self.path = path


class InvalidFilterError(TemplateException):
    """Raised for an unknown filter or a value the filter can't convert."""


class InvalidOutputError(TemplateException):
    """Raised when a rendered object is not a valid kubernetes object."""


class InvalidExpressionError(InputException):
    """Raised when a dependency readiness expression fails to parse."""

    def __init__(self, expression: str, error: str) -> None:
        super().__init__(f"failed to parse expression '{expression}': {error}")
        self.expression = expression
        self.error = error


class ExpressionEvaluationError(FluxException):
    """Raised when an expression can't be evaluated to a boolean."""


class CopyFromError(FluxException):
    """Raised when the data of a copyFrom source can't be copied."""


class ImpersonationError(FluxException):
    """Raised when the service account to impersonate is not usable."""


class ObjectNotFoundError(FluxException):
    """Raised when an object is not found in the cluster."""


class ConflictError(FluxException):
    """Raised when an object was modified since it was last read."""


class ApplyError(FluxException):
    """Raised when an object in the apply set fails to apply."""

    def __init__(self, resource_id: str, message: str) -> None:
        super().__init__(f"{resource_id} apply failed: {message}")
        self.resource_id = resource_id


class PruneError(FluxException):
    """Raised when a stale object can't be deleted."""


class ReconcileError(FluxException):
    """Raised when a ResourceSet reconciliation fails and should be retried."""
