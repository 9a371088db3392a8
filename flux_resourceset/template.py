"""Module for rendering ResourceSet templates into kubernetes objects.

Every resource template is rendered once for every entry in the inputs,
producing the objects in template-major order. Placeholders use the form
`<< inputs.name | filter >>` and may only appear in string values, never in
mapping keys.
"""

import copy
import hashlib
import json
import logging
import re
from typing import Any

from .exceptions import (
    InputException,
    InvalidFilterError,
    InvalidOutputError,
    TemplateException,
    UndefinedInputError,
)
from .filters import apply_filters, to_text
from .manifest import CommonMetadata, NamedResource

__all__ = [
    "build_resources",
    "checksum",
]

_LOGGER = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"<<(.*?)>>", re.DOTALL)
PIPE = "|"
INPUTS_ROOT = "inputs"


class _Renderer:
    """Renders one template against one set of inputs."""

    def __init__(
        self, template_index: int, input_index: int, inputs: dict[str, Any]
    ) -> None:
        self._template_index = template_index
        self._input_index = input_index
        self._inputs = inputs

    def render(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self.render(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self.render(item) for item in node]
        if isinstance(node, str):
            return self._render_string(node)
        return node

    def _render_string(self, text: str) -> Any:
        matches = list(PLACEHOLDER_RE.finditer(text))
        if not matches:
            return text
        # A value that is a single placeholder keeps the type of the result
        if len(matches) == 1 and matches[0].span() == (0, len(text)):
            return copy.deepcopy(self._evaluate(matches[0].group(1)))
        return PLACEHOLDER_RE.sub(
            lambda match: to_text(self._evaluate(match.group(1))), text
        )

    def _evaluate(self, expression: str) -> Any:
        path, *filters = [part.strip() for part in expression.split(PIPE)]
        value = self._lookup(path)
        try:
            return apply_filters(value, filters)
        except InvalidFilterError as err:
            raise InvalidFilterError(
                f"failed to render resource at index {self._template_index} "
                f"with inputs at index {self._input_index}: {err}"
            ) from err

    def _lookup(self, path: str) -> Any:
        root, _, rest = path.partition(".")
        if root != INPUTS_ROOT or not rest:
            raise UndefinedInputError(self._template_index, self._input_index, path)
        value: Any = self._inputs
        for part in rest.split("."):
            if not isinstance(value, dict) or part not in value:
                raise UndefinedInputError(
                    self._template_index, self._input_index, path
                )
            value = value[part]
        return value


def _merge_common_metadata(
    obj: dict[str, Any], common_metadata: CommonMetadata | None
) -> None:
    """Add the common labels and annotations, keeping values set by the template."""
    if common_metadata is None:
        return
    metadata = obj.setdefault("metadata", {})
    for key, values in (
        ("labels", common_metadata.labels),
        ("annotations", common_metadata.annotations),
    ):
        if not values:
            continue
        metadata[key] = {**values, **(metadata.get(key) or {})}


def build_resources(
    templates: list[dict[str, Any]],
    inputs: list[dict[str, Any]],
    common_metadata: CommonMetadata | None = None,
) -> list[dict[str, Any]]:
    """Render all templates against all inputs.

    An empty list of inputs renders each template exactly once. Any error
    aborts the whole render.
    """
    bindings = inputs or [{}]
    objects: list[dict[str, Any]] = []
    seen: dict[str, tuple[int, int]] = {}
    for template_index, template in enumerate(templates):
        if not isinstance(template, dict):
            raise InvalidOutputError(
                f"resource at index {template_index} is not a map: {template}"
            )
        for input_index, binding in enumerate(bindings):
            renderer = _Renderer(template_index, input_index, binding)
            obj = renderer.render(template)
            if not isinstance(obj, dict):
                raise InvalidOutputError(
                    f"resource at index {template_index} with inputs at index "
                    f"{input_index} did not render to a map"
                )
            try:
                resource_id = NamedResource.from_doc(obj)
            except InputException as err:
                raise InvalidOutputError(
                    f"failed to render resource at index {template_index} with "
                    f"inputs at index {input_index}: {err}"
                ) from err
            if (other := seen.get(resource_id.object_id)) is not None:
                raise InvalidOutputError(
                    f"duplicate object {resource_id} rendered from resource at "
                    f"index {template_index} with inputs at index {input_index} "
                    f"and resource at index {other[0]} with inputs at index "
                    f"{other[1]}"
                )
            seen[resource_id.object_id] = (template_index, input_index)
            _merge_common_metadata(obj, common_metadata)
            objects.append(obj)
    _LOGGER.debug(
        "Rendered %d objects from %d resources and %d inputs",
        len(objects),
        len(templates),
        len(inputs),
    )
    return objects


def checksum(objects: list[dict[str, Any]]) -> str:
    """Return a content digest of a set of objects."""
    try:
        content = json.dumps(objects, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as err:
        raise TemplateException(f"Unable to serialize objects: {err}") from err
    return f"sha256:{hashlib.sha256(content.encode()).hexdigest()}"
