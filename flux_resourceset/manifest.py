"""Representation of ResourceSet objects and their status.

A ResourceSet holds a list of resource templates, the inputs used to
render them, and the dependencies that must be ready before the rendered
objects are applied. The status carries the inventory of objects the
ResourceSet owns in the cluster across reconciliations.
"""

from dataclasses import dataclass, field
import datetime
import logging
from pathlib import Path
import re
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import InputException

__all__ = [
    "read_resource_sets",
    "parse_duration",
    "group_from_api_version",
    "NamedResource",
    "ResourceSet",
    "ResourceSetSpec",
    "ResourceSetStatus",
    "CommonMetadata",
    "Dependency",
    "Condition",
    "ResourceRef",
    "ResourceInventory",
]

_LOGGER = logging.getLogger(__name__)


RESOURCESET_DOMAIN = "fluxcd.controlplane.io"
RESOURCESET_API_VERSION = f"{RESOURCESET_DOMAIN}/v1"
RESOURCESET_KIND = "ResourceSet"
FINALIZER = f"{RESOURCESET_DOMAIN}/finalizer"

COPY_FROM_ANNOTATION = f"{RESOURCESET_DOMAIN}/copyFrom"
RECONCILE_ANNOTATION = f"{RESOURCESET_DOMAIN}/reconcile"
RECONCILE_EVERY_ANNOTATION = f"{RESOURCESET_DOMAIN}/reconcileEvery"
RECONCILE_TIMEOUT_ANNOTATION = f"{RESOURCESET_DOMAIN}/reconcileTimeout"
PRUNE_ANNOTATION = f"{RESOURCESET_DOMAIN}/prune"
SSA_ANNOTATION = f"{RESOURCESET_DOMAIN}/ssa"
DISABLED_VALUE = "disabled"
SSA_IF_NOT_PRESENT = "IfNotPresent"
SSA_IGNORE = "Ignore"

# Labels set on every object applied on behalf of a ResourceSet
OWNER_LABEL_PREFIX = f"resourceset.{RESOURCESET_DOMAIN}"
OWNER_NAME_LABEL = f"{OWNER_LABEL_PREFIX}/name"
OWNER_NAMESPACE_LABEL = f"{OWNER_LABEL_PREFIX}/namespace"

CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
CRD_KIND = "CustomResourceDefinition"
DEPLOYMENT_KIND = "Deployment"

READY_CONDITION = "Ready"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

PROGRESSING_REASON = "Progressing"
RECONCILIATION_SUCCEEDED_REASON = "ReconciliationSucceeded"
RECONCILIATION_FAILED_REASON = "ReconciliationFailed"
DEPENDENCY_NOT_READY_REASON = "DependencyNotReady"
INVALID_EXPRESSION_REASON = "InvalidCELExpression"
BUILD_FAILED_REASON = "BuildFailed"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse a duration string such as `1h30m` or `45s` into seconds."""
    value = value.strip()
    if not value:
        raise InputException("Invalid empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise InputException(f"Invalid duration '{value}'")
    return total


def group_from_api_version(api_version: str) -> str:
    """Return the API group of an apiVersion, empty for the core group."""
    if "/" not in api_version:
        return ""
    return api_version.split("/", 1)[0]


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str
    group: str = ""

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def object_id(self) -> str:
        """Return the identity string used as the inventory key."""
        return f"{self.namespace or ''}_{self.name}_{self.group}_{self.kind}"

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identity of a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(
            kind=kind,
            namespace=metadata.get("namespace") or None,
            name=name,
            group=group_from_api_version(api_version),
        )

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class CommonMetadata(BaseManifest):
    """Labels and annotations added to every rendered object."""

    labels: dict[str, str] | None = None
    """Labels merged into the metadata of the rendered objects."""

    annotations: dict[str, str] | None = None
    """Annotations merged into the metadata of the rendered objects."""


@dataclass
class Dependency(BaseManifest):
    """A reference to an object that must exist before applying resources."""

    api_version: str = field(metadata=field_options(alias="apiVersion"))
    """The apiVersion of the dependency."""

    kind: str
    """The kind of the dependency."""

    name: str
    """The name of the dependency."""

    namespace: str | None = None
    """The namespace of the dependency, empty for cluster scoped objects."""

    ready: bool = False
    """Whether the dependency must also be ready, not only exist."""

    ready_expr: str | None = field(
        metadata=field_options(alias="readyExpr"), default=None
    )
    """A CEL expression evaluated against the dependency status."""

    @property
    def resource_id(self) -> NamedResource:
        """Identity of the referenced object."""
        return NamedResource(
            kind=self.kind,
            namespace=self.namespace or None,
            name=self.name,
            group=group_from_api_version(self.api_version),
        )


@dataclass
class ResourceSetSpec(BaseManifest):
    """The desired state of a ResourceSet."""

    resources: list[dict[str, Any]] = field(default_factory=list)
    """Templates of the objects to render, one object per set of inputs."""

    inputs: list[dict[str, Any]] = field(default_factory=list)
    """Each entry is a set of values used to render all the resources."""

    depends_on: list[Dependency] = field(
        metadata=field_options(alias="dependsOn"), default_factory=list
    )
    """Objects that must exist (or be ready) before applying the resources."""

    common_metadata: CommonMetadata | None = field(
        metadata=field_options(alias="commonMetadata"), default=None
    )
    """Labels and annotations added to all rendered objects."""

    service_account_name: str | None = field(
        metadata=field_options(alias="serviceAccountName"), default=None
    )
    """Service account impersonated when applying and pruning objects."""


@dataclass
class Condition(BaseManifest):
    """A status condition of a ResourceSet."""

    type: str
    status: str
    reason: str
    message: str
    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )
    last_transition_time: str | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )


@dataclass
class ResourceRef(BaseManifest):
    """An entry in the inventory of objects owned by a ResourceSet."""

    id: str
    """The `<namespace>_<name>_<group>_<kind>` identity of the object."""

    version: str = field(metadata=field_options(alias="v"))
    """The apiVersion of the object."""

    @property
    def resource_id(self) -> NamedResource:
        """Parse the identity string of the entry."""
        parts = self.id.split("_")
        if len(parts) != 4:
            raise InputException(f"Invalid inventory entry id '{self.id}'")
        namespace, name, group, kind = parts
        return NamedResource(
            kind=kind, namespace=namespace or None, name=name, group=group
        )


@dataclass
class ResourceInventory(BaseManifest):
    """The set of objects a ResourceSet currently owns."""

    entries: list[ResourceRef] = field(default_factory=list)


@dataclass
class ResourceSetStatus(BaseManifest):
    """The observed state of a ResourceSet."""

    conditions: list[Condition] = field(default_factory=list)
    inventory: ResourceInventory | None = None
    last_applied_revision: str | None = field(
        metadata=field_options(alias="lastAppliedRevision"), default=None
    )

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
        observed_generation: int | None = None,
    ) -> None:
        """Set a condition, keeping the transition time if the status is unchanged."""
        if (existing := self.get_condition(condition_type)) is not None:
            if existing.status != status:
                existing.last_transition_time = _now()
            existing.status = status
            existing.reason = reason
            existing.message = message
            existing.observed_generation = observed_generation
            return
        self.conditions.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=observed_generation,
                last_transition_time=_now(),
            )
        )


@dataclass
class ResourceSet(BaseManifest):
    """A representation of a ResourceSet object."""

    kind: ClassVar[str] = RESOURCESET_KIND
    """The kind of the object."""

    name: str
    """The name of the ResourceSet."""

    namespace: str
    """The namespace of the ResourceSet."""

    spec: ResourceSetSpec = field(default_factory=ResourceSetSpec)
    """The templates, inputs and dependencies."""

    status: ResourceSetStatus = field(default_factory=ResourceSetStatus)
    """The last observed status."""

    generation: int = 0
    resource_version: str | None = None
    finalizers: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    deletion_timestamp: str | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ResourceSet":
        """Parse a ResourceSet from a kubernetes resource object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not api_version.startswith(RESOURCESET_DOMAIN):
            raise InputException(
                f"Invalid object expected '{RESOURCESET_DOMAIN}': {doc}"
            )
        if doc.get("kind") != RESOURCESET_KIND:
            raise InputException(f"Invalid object expected {RESOURCESET_KIND}: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        try:
            spec = ResourceSetSpec.from_dict(doc.get("spec") or {})
            status = ResourceSetStatus.from_dict(doc.get("status") or {})
        except (MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {cls} {namespace}/{name}: {err}") from err
        for index, inputs in enumerate(spec.inputs):
            if not isinstance(inputs, dict):
                raise InputException(
                    f"Invalid {cls} {namespace}/{name} inputs at index {index} "
                    "is not a map"
                )
        return cls(
            name=name,
            namespace=namespace,
            spec=spec,
            status=status,
            generation=metadata.get("generation", 0),
            resource_version=metadata.get("resourceVersion"),
            finalizers=list(metadata.get("finalizers") or []),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    def to_doc(self) -> dict[str, Any]:
        """Return the kubernetes resource object for the ResourceSet."""
        metadata: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "generation": self.generation,
        }
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        if self.finalizers:
            metadata["finalizers"] = list(self.finalizers)
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.deletion_timestamp:
            metadata["deletionTimestamp"] = self.deletion_timestamp
        return {
            "apiVersion": RESOURCESET_API_VERSION,
            "kind": RESOURCESET_KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(
            kind=RESOURCESET_KIND,
            namespace=self.namespace,
            name=self.name,
            group=RESOURCESET_DOMAIN,
        )

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def reconcile_disabled(self) -> bool:
        """Return True when reconciliation is disabled via annotation."""
        return self.annotations.get(RECONCILE_ANNOTATION, "").lower() == DISABLED_VALUE

    @property
    def reconcile_every(self) -> float | None:
        """The interval in seconds set by the reconcileEvery annotation."""
        if not (value := self.annotations.get(RECONCILE_EVERY_ANNOTATION)):
            return None
        return parse_duration(value)

    @property
    def reconcile_timeout(self) -> float | None:
        """The deadline in seconds set by the reconcileTimeout annotation."""
        if not (value := self.annotations.get(RECONCILE_TIMEOUT_ANNOTATION)):
            return None
        return parse_duration(value)

    @property
    def inventory_entries(self) -> list[ResourceRef]:
        if self.status.inventory is None:
            return []
        return list(self.status.inventory.entries)


async def read_resource_sets(path: Path) -> list[ResourceSet]:
    """Return the ResourceSet objects found in a YAML file.

    Other object kinds in the file are ignored.
    """
    async with aiofiles.open(str(path)) as resource_file:
        content = await resource_file.read()
    try:
        docs = list(yaml.load_all(content, Loader=yaml.SafeLoader))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    results = []
    for doc in docs:
        if not doc or doc.get("kind") != RESOURCESET_KIND:
            _LOGGER.debug("Skipping document in %s: %s", path, doc)
            continue
        results.append(ResourceSet.parse_doc(doc))
    return results
