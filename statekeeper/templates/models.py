"""
Template models.

Raw template documents are validated by the schema validator first and then
parsed into these strict per-kind pydantic models, so the rest of the engine
never touches untyped data. Models are frozen; inheritance produces new
instances through ``merge``.
"""

import base64
import binascii
from enum import Enum
from typing import Any, ClassVar, Dict, Iterator, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..locator import APPLICATION, FILE, REGISTRY, SCHEDULED_TASK, Locator


class FieldType(str, Enum):
    """Primitive types a descriptor field can declare."""

    STRING = "string"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    BINARY = "binary"
    LIST = "list"


FIELD_TYPE_ALIASES: Dict[str, FieldType] = {
    "str": FieldType.STRING,
    "expand_string": FieldType.STRING,
    "int": FieldType.INTEGER,
    "dword": FieldType.INTEGER,
    "qword": FieldType.INTEGER,
    "bool": FieldType.BOOLEAN,
    "bytes": FieldType.BINARY,
    "multi_string": FieldType.LIST,
}


def parse_field_type(value: Any) -> FieldType:
    """Resolve a declared field type or alias.

    Raises:
        ValueError: If the value is not a known field type.
    """
    if isinstance(value, FieldType):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in FIELD_TYPE_ALIASES:
            return FIELD_TYPE_ALIASES[text]
        try:
            return FieldType(text)
        except ValueError:
            pass
    allowed = ", ".join(t.value for t in FieldType)
    raise ValueError(f"unknown field type {value!r} (expected one of: {allowed})")


# Resource kinds in execution order: registry-driven identity state comes
# before file ownership, applications and tasks come last.
KIND_ORDER: Tuple[str, ...] = (REGISTRY, FILE, APPLICATION, SCHEDULED_TASK)

# Section names accepted in template documents for each kind
SECTION_ALIASES: Dict[str, Tuple[str, ...]] = {
    REGISTRY: ("registry",),
    FILE: ("file", "files"),
    APPLICATION: ("application", "applications"),
    SCHEDULED_TASK: ("scheduled_task", "scheduled_tasks"),
}


class FieldSpec(BaseModel):
    """Declared type of one named field and whether it is stored encrypted."""

    type: FieldType
    encrypt: bool = False

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("type", mode="before")
    @classmethod
    def resolve_alias(cls, v: Any) -> FieldType:
        return parse_field_type(v)


class Policy(BaseModel):
    """Capture/apply policy of a descriptor."""

    encrypt: bool = Field(default=False, description="Encrypt every field")
    preserve_attributes: bool = Field(default=False, description="Record timestamps")
    preserve_permissions: bool = Field(default=False, description="Record mode and owner")
    preserve_links: bool = Field(default=False, description="Record symlink targets")
    required: bool = Field(default=False, description="Failure aborts the run")
    requires_reboot: bool = Field(
        default=False, description="Changes take effect only after a reboot"
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    def merged(self, override: "Policy") -> "Policy":
        """Return a policy with the flags ``override`` sets explicitly applied."""
        update = {name: getattr(override, name) for name in override.model_fields_set}
        return self.model_copy(update=update)


def _fold_shorthand(data: Any) -> Any:
    """Move descriptor-level shorthand keys into their canonical places."""
    if not isinstance(data, Mapping):
        return data
    data = dict(data)
    if "path" not in data and "locator" in data:
        data["path"] = data.pop("locator")
    else:
        data.pop("locator", None)

    shorthand = {
        flag: data.pop(flag)
        for flag in ("encrypt", "required", "requires_reboot")
        if flag in data
    }
    if shorthand:
        policy = data.get("policy")
        policy = dict(policy) if isinstance(policy, Mapping) else {}
        for flag, value in shorthand.items():
            policy.setdefault(flag, value)
        data["policy"] = policy

    fields = data.get("fields")
    if isinstance(fields, Mapping):
        data["fields"] = {
            name: {"type": spec} if not isinstance(spec, Mapping) else spec
            for name, spec in fields.items()
        }
    return data


class ResourceDescriptor(BaseModel):
    """A locator plus typed fields and a capture/apply policy.

    ``path`` is the raw address from the template; ``locator`` is filled in
    by the inheritance resolver once the address has been normalized.
    """

    kind: ClassVar[str] = ""
    DEFAULT_FIELDS: ClassVar[Dict[str, FieldType]] = {}

    name: Optional[str] = None
    path: str
    fields: Dict[str, FieldSpec] = Field(default_factory=dict)
    policy: Policy = Field(default_factory=Policy)
    locator: Optional[Locator] = Field(default=None, exclude=True)

    model_config = ConfigDict(extra="ignore", frozen=True, arbitrary_types_allowed=True)

    @model_validator(mode="before")
    @classmethod
    def fold_shorthand(cls, data: Any) -> Any:
        return _fold_shorthand(data)

    @field_validator("path")
    @classmethod
    def path_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("locator cannot be empty")
        return v

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return str(self.locator) if self.locator is not None else self.path

    @property
    def required(self) -> bool:
        return self.policy.required

    def effective_fields(self) -> Dict[str, FieldSpec]:
        """Declared fields, or the kind's default fields when none are declared."""
        if self.fields:
            return dict(self.fields)
        return {name: FieldSpec(type=t) for name, t in self.DEFAULT_FIELDS.items()}

    def is_encrypted(self, field_name: str) -> bool:
        if self.policy.encrypt:
            return True
        spec = self.fields.get(field_name)
        return bool(spec and spec.encrypt)

    def merge(self, override: "ResourceDescriptor") -> "ResourceDescriptor":
        """Apply the keys ``override`` sets explicitly on top of this descriptor.

        ``fields`` merge per field name and ``policy`` merges per flag; every
        other explicitly set attribute, lists included, replaces the inherited
        value wholesale.
        """
        update: Dict[str, Any] = {}
        for key in override.model_fields_set:
            if key == "locator":
                continue
            if key == "fields":
                merged = dict(self.fields)
                merged.update(override.fields)
                update["fields"] = merged
            elif key == "policy":
                update["policy"] = self.policy.merged(override.policy)
            else:
                update[key] = getattr(override, key)
        return self.model_copy(update=update)

    def with_locator(self, locator: Locator) -> "ResourceDescriptor":
        return self.model_copy(update={"locator": locator})


class FileDescriptor(ResourceDescriptor):
    kind: ClassVar[str] = FILE
    DEFAULT_FIELDS: ClassVar[Dict[str, FieldType]] = {"content": FieldType.BINARY}

    type: Literal["file", "directory"] = "file"
    # Glob patterns, relative to the directory, left out of directory archives
    exclude_patterns: List[str] = Field(default_factory=list)


class RegistryDescriptor(ResourceDescriptor):
    """Registry key. No declared fields means every value of the key."""

    kind: ClassVar[str] = REGISTRY


CommandSpec = Union[str, List[str]]


class ApplicationDescriptor(ResourceDescriptor):
    kind: ClassVar[str] = APPLICATION
    DEFAULT_FIELDS: ClassVar[Dict[str, FieldType]] = {"inventory": FieldType.LIST}

    discovery_command: Optional[CommandSpec] = None
    # Turns raw discovery output (stdin) into the inventory printed on stdout
    parse_script: Optional[CommandSpec] = None
    install_command: Optional[CommandSpec] = None
    # Restores the whole recorded inventory (JSON on stdin); wins over install_command
    install_script: Optional[CommandSpec] = None
    parse: Literal["json", "lines"] = "json"
    id_field: str = "id"
    shell: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def default_path_from_name(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and not data.get("path") and not data.get("locator"):
            if data.get("name"):
                data = dict(data)
                data["path"] = data["name"]
        return data


class ScheduledTaskDescriptor(ResourceDescriptor):
    kind: ClassVar[str] = SCHEDULED_TASK
    DEFAULT_FIELDS: ClassVar[Dict[str, FieldType]] = {
        "definition": FieldType.STRING,
        "enabled": FieldType.BOOLEAN,
    }


DESCRIPTOR_TYPES: Dict[str, type] = {
    REGISTRY: RegistryDescriptor,
    FILE: FileDescriptor,
    APPLICATION: ApplicationDescriptor,
    SCHEDULED_TASK: ScheduledTaskDescriptor,
}


class Prerequisite(BaseModel):
    """A host check evaluated before any resource is touched."""

    name: str
    command: CommandSpec
    shell: Optional[str] = None
    expected_output: Optional[str] = None
    on_missing: Literal["warn", "fail", "skip"] = "warn"

    model_config = ConfigDict(extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def inline_script_alias(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "command" not in data and "inline_script" in data:
            data = dict(data)
            data["command"] = data.pop("inline_script")
            data.setdefault("shell", "powershell")
        return data


class TemplateMetadata(BaseModel):
    name: str
    version: str = "1.0"
    description: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    extends: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("version", mode="before")
    @classmethod
    def version_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v

    @field_validator("extends", mode="before")
    @classmethod
    def extends_as_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class ResourceSet(BaseModel):
    registry: List[RegistryDescriptor] = Field(default_factory=list)
    file: List[FileDescriptor] = Field(default_factory=list)
    application: List[ApplicationDescriptor] = Field(default_factory=list)
    scheduled_task: List[ScheduledTaskDescriptor] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def of_kind(self, kind: str) -> List[ResourceDescriptor]:
        return list(getattr(self, kind))

    def ordered(self) -> Iterator[ResourceDescriptor]:
        """Iterate descriptors kind by kind in execution order."""
        for kind in KIND_ORDER:
            yield from getattr(self, kind)

    def __len__(self) -> int:
        return sum(len(getattr(self, kind)) for kind in KIND_ORDER)


class Template(BaseModel):
    """A template document; resolved once ``lineage`` is populated."""

    metadata: TemplateMetadata
    resources: ResourceSet = Field(default_factory=ResourceSet)
    prerequisites: List[Prerequisite] = Field(default_factory=list)
    lineage: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_resolved(self) -> bool:
        return bool(self.lineage)

    def descriptors(self) -> Iterator[ResourceDescriptor]:
        return self.resources.ordered()

    def to_document(self) -> Dict[str, Any]:
        """Render the template back into the canonical document layout."""
        metadata = self.metadata.model_dump(exclude_none=True)
        if not metadata.get("extends"):
            metadata.pop("extends", None)
        resources: Dict[str, Any] = {}
        for kind in KIND_ORDER:
            entries = []
            for descriptor in getattr(self.resources, kind):
                entry = descriptor.model_dump(mode="json", exclude_none=True)
                if descriptor.locator is not None:
                    entry["path"] = str(descriptor.locator)
                entries.append(entry)
            if entries:
                resources[kind] = entries
        document: Dict[str, Any] = {"metadata": metadata, "resources": resources}
        if self.prerequisites:
            document["prerequisites"] = [
                p.model_dump(mode="json", exclude_none=True) for p in self.prerequisites
            ]
        return document


def canonical_sections(raw: Mapping[str, Any]) -> Dict[str, Tuple[str, Any]]:
    """Map each resource kind to ``(section_path, entries)`` found in ``raw``.

    Accepts both the ``resources: {kind: [...]}`` layout and the legacy
    top-level ``files``/``registry``/``applications`` sections. Does not
    mutate ``raw``.
    """
    found: Dict[str, Tuple[str, Any]] = {}
    resources = raw.get("resources")
    if isinstance(resources, Mapping):
        for kind, aliases in SECTION_ALIASES.items():
            for alias in aliases:
                if alias in resources:
                    found[kind] = (f"resources.{alias}", resources[alias])
                    break
    for kind, aliases in SECTION_ALIASES.items():
        if kind in found:
            continue
        for alias in aliases:
            if alias in raw:
                found[kind] = (alias, raw[alias])
                break
    return found


def parse_template(raw: Mapping[str, Any]) -> Template:
    """Parse a validated raw document into an unresolved ``Template``."""
    sections = canonical_sections(raw)
    resources = {kind: list(entries or []) for kind, (_, entries) in sections.items()}
    return Template.model_validate(
        {
            "metadata": raw.get("metadata") or {},
            "resources": resources,
            "prerequisites": raw.get("prerequisites") or [],
        }
    )


# -- field values -----------------------------------------------------------


def coerce_field_value(value: Any, field_type: FieldType) -> Any:
    """Check ``value`` against ``field_type`` and return it in canonical form.

    Raises:
        TypeError: If the value cannot represent the declared type.
    """
    if field_type is FieldType.STRING:
        if isinstance(value, str):
            return value
    elif field_type is FieldType.INTEGER:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif field_type is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
    elif field_type is FieldType.BINARY:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
    elif field_type is FieldType.LIST:
        if isinstance(value, (list, tuple)):
            return list(value)
    raise TypeError(
        f"value of type {type(value).__name__} does not match field type {field_type.value}"
    )


def encode_field_value(value: Any, field_type: FieldType) -> Any:
    """Render a field value as JSON-safe data for a state record."""
    if value is None:
        return None
    if field_type is FieldType.BINARY:
        return base64.b64encode(value).decode("ascii")
    return value


def decode_field_value(value: Any, field_type: FieldType) -> Any:
    """Inverse of ``encode_field_value``."""
    if value is None:
        return None
    if field_type is FieldType.BINARY:
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, TypeError) as e:
            raise TypeError(f"invalid base64 payload: {e}") from e
    return coerce_field_value(value, field_type)
