"""
Schema validation for raw template documents.

The validator is purely diagnostic: it never mutates its input and returns
every issue it finds instead of stopping at the first one. The loader runs it
on each document before inheritance is resolved, so issues are reported
against the document the user actually wrote.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError

from ..exceptions import InvalidLocatorError
from ..locator import APPLICATION, LocatorNormalizer
from .models import (
    DESCRIPTOR_TYPES,
    SECTION_ALIASES,
    Prerequisite,
    canonical_sections,
    parse_field_type,
)

logger = logging.getLogger(__name__)

_KNOWN_RESOURCE_SECTIONS = {alias for aliases in SECTION_ALIASES.values() for alias in aliases}


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in a raw template document."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class SchemaValidator:
    """Checks a raw template document against the expected shape per kind."""

    def __init__(self, normalizer: Optional[LocatorNormalizer] = None):
        self.normalizer = normalizer or LocatorNormalizer()

    def validate(self, raw: Any) -> List[ValidationIssue]:
        """
        Validate a raw template document.

        Args:
            raw: Parsed YAML/JSON document

        Returns:
            List of issues; empty when the document is valid
        """
        issues: List[ValidationIssue] = []
        if not isinstance(raw, Mapping):
            return [ValidationIssue("$", "template document must be a mapping")]

        self._check_metadata(raw.get("metadata"), issues)

        resources = raw.get("resources")
        if resources is not None:
            if not isinstance(resources, Mapping):
                issues.append(ValidationIssue("resources", "must be a mapping of resource kinds"))
            else:
                for section in resources:
                    if section not in _KNOWN_RESOURCE_SECTIONS:
                        issues.append(
                            ValidationIssue(f"resources.{section}", "unknown resource kind")
                        )

        for kind, (section_path, entries) in canonical_sections(raw).items():
            if entries is None:
                continue
            if not isinstance(entries, list):
                issues.append(ValidationIssue(section_path, "must be a list of descriptors"))
                continue
            for index, entry in enumerate(entries):
                self._check_descriptor(kind, f"{section_path}[{index}]", entry, issues)

        self._check_prerequisites(raw.get("prerequisites"), issues)

        if issues:
            logger.debug(f"Template validation found {len(issues)} issue(s)")
        return issues

    def _check_metadata(self, metadata: Any, issues: List[ValidationIssue]) -> None:
        if metadata is None:
            issues.append(ValidationIssue("metadata", "is required"))
            return
        if not isinstance(metadata, Mapping):
            issues.append(ValidationIssue("metadata", "must be a mapping"))
            return
        name = metadata.get("name")
        if not isinstance(name, str) or not name.strip():
            issues.append(ValidationIssue("metadata.name", "must be a non-empty string"))
        version = metadata.get("version")
        if version is not None and not isinstance(version, (str, int, float)):
            issues.append(ValidationIssue("metadata.version", "must be a string"))
        extends = metadata.get("extends")
        if extends is not None:
            names = [extends] if isinstance(extends, str) else extends
            if not isinstance(names, list) or not all(
                isinstance(n, str) and n.strip() for n in names
            ):
                issues.append(
                    ValidationIssue(
                        "metadata.extends", "must be a template name or a list of names"
                    )
                )

    def _check_descriptor(
        self, kind: str, path: str, entry: Any, issues: List[ValidationIssue]
    ) -> None:
        if not isinstance(entry, Mapping):
            issues.append(ValidationIssue(path, "descriptor must be a mapping"))
            return
        before = len(issues)

        address = entry.get("path", entry.get("locator"))
        if address is None and kind == APPLICATION:
            address = entry.get("name")
        if not isinstance(address, str) or not address.strip():
            issues.append(ValidationIssue(f"{path}.path", "locator must be a non-empty string"))
        else:
            try:
                self.normalizer.normalize(address, kind)
            except InvalidLocatorError as e:
                issues.append(ValidationIssue(f"{path}.path", e.message))

        fields = entry.get("fields")
        if fields is not None:
            if not isinstance(fields, Mapping):
                issues.append(ValidationIssue(f"{path}.fields", "must be a mapping"))
            else:
                for name, spec in fields.items():
                    declared = spec.get("type") if isinstance(spec, Mapping) else spec
                    try:
                        parse_field_type(declared)
                    except ValueError as e:
                        issues.append(ValidationIssue(f"{path}.fields.{name}", str(e)))

        policy = entry.get("policy")
        if policy is not None and not isinstance(policy, Mapping):
            issues.append(ValidationIssue(f"{path}.policy", "must be a mapping"))

        if len(issues) > before:
            return
        try:
            DESCRIPTOR_TYPES[kind].model_validate(entry)
        except ValidationError as e:
            issues.extend(_pydantic_issues(path, e))

    def _check_prerequisites(self, prerequisites: Any, issues: List[ValidationIssue]) -> None:
        if prerequisites is None:
            return
        if not isinstance(prerequisites, list):
            issues.append(ValidationIssue("prerequisites", "must be a list"))
            return
        for index, entry in enumerate(prerequisites):
            path = f"prerequisites[{index}]"
            if not isinstance(entry, Mapping):
                issues.append(ValidationIssue(path, "must be a mapping"))
                continue
            try:
                Prerequisite.model_validate(entry)
            except ValidationError as e:
                issues.extend(_pydantic_issues(path, e))


def _pydantic_issues(prefix: str, error: ValidationError) -> List[ValidationIssue]:
    issues = []
    for detail in error.errors():
        loc = ".".join(str(part) for part in detail.get("loc", ()))
        path = f"{prefix}.{loc}" if loc else prefix
        issues.append(ValidationIssue(path, detail.get("msg", "invalid value")))
    return issues
