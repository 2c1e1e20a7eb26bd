"""
Template loading.

Reads a raw template document from a source, validates it, resolves its
inheritance chain (fetching and validating ancestors lazily) and returns a
fully resolved Template. There is no partial success: callers either get a
resolved template or a typed error.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from ..exceptions import InvalidLocatorError, TemplateLoadError, TemplateNotFoundError
from ..locator import LocatorNormalizer
from .inheritance import InheritanceResolver
from .models import ApplicationDescriptor, Template, parse_template
from .schema import SchemaValidator, ValidationIssue

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


class TemplateSource(ABC):
    """Where raw template documents come from."""

    @abstractmethod
    def fetch(self, name: str) -> Any:
        """Return the raw document for ``name``.

        Raises:
            TemplateNotFoundError: If no template has that name
            TemplateLoadError: If the document cannot be read or parsed
        """
        pass

    @abstractmethod
    def names(self) -> List[str]:
        pass


class InMemoryTemplateSource(TemplateSource):
    """Serves raw documents from a mapping of name to document."""

    def __init__(self, documents: Optional[Mapping[str, Any]] = None):
        self._documents: Dict[str, Any] = dict(documents or {})

    def add(self, name: str, document: Any) -> None:
        self._documents[name] = document

    def fetch(self, name: str) -> Any:
        if name not in self._documents:
            raise TemplateNotFoundError(name)
        return self._documents[name]

    def names(self) -> List[str]:
        return sorted(self._documents)


class DirectoryTemplateSource(TemplateSource):
    """Serves YAML/JSON template files below a directory.

    A template can be addressed by its path relative to the directory
    (without suffix, e.g. ``System/display``), by its file stem, or by its
    ``metadata.name``. Names are matched case-insensitively.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._index: Optional[Dict[str, Path]] = None

    def _build_index(self) -> Dict[str, Path]:
        index: Dict[str, Path] = {}
        if not self.root.is_dir():
            logger.warning(f"Templates directory does not exist: {self.root}")
            return index
        files = sorted(p for p in self.root.rglob("*") if p.suffix.lower() in TEMPLATE_SUFFIXES)
        for path in files:
            relative = path.relative_to(self.root).with_suffix("").as_posix()
            index.setdefault(relative.casefold(), path)
            index.setdefault(path.stem.casefold(), path)
        for path in files:
            try:
                document = self._read(path)
            except TemplateLoadError:
                continue
            metadata = document.get("metadata") if isinstance(document, Mapping) else None
            name = metadata.get("name") if isinstance(metadata, Mapping) else None
            if isinstance(name, str) and name.strip():
                index.setdefault(name.strip().casefold(), path)
        return index

    def _lookup(self, name: str) -> Path:
        if self._index is None:
            self._index = self._build_index()
        direct = self.root / name
        if direct.is_file():
            return direct
        path = self._index.get(name.strip().casefold())
        if path is None:
            raise TemplateNotFoundError(name, context={"directory": str(self.root)})
        return path

    @staticmethod
    def _read(path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix.lower() == ".json":
                    return json.load(f)
                return yaml.safe_load(f)
        except (yaml.YAMLError, ValueError) as e:
            raise TemplateLoadError(
                f"Cannot parse template file {path}: {e}", template=path.stem, cause=e
            ) from e
        except OSError as e:
            raise TemplateLoadError(
                f"Cannot read template file {path}: {e}", template=path.stem, cause=e
            ) from e

    def fetch(self, name: str) -> Any:
        return self._read(self._lookup(name))

    def names(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).with_suffix("").as_posix()
            for p in self.root.rglob("*")
            if p.suffix.lower() in TEMPLATE_SUFFIXES
        )


class TemplateLoader:
    """Loads, validates and resolves templates from a source."""

    def __init__(
        self,
        source: TemplateSource,
        normalizer: Optional[LocatorNormalizer] = None,
        validator: Optional[SchemaValidator] = None,
        resolver: Optional[InheritanceResolver] = None,
    ):
        self.source = source
        self.normalizer = normalizer or LocatorNormalizer()
        self.validator = validator or SchemaValidator(self.normalizer)
        self.resolver = resolver or InheritanceResolver(self.normalizer)

    def load(self, name: str) -> Template:
        """
        Load and resolve the template called ``name``.

        Raises:
            TemplateNotFoundError: If the template or one of its bases is missing
            TemplateLoadError: If any document in the chain fails validation
            CyclicInheritanceError: If the chain contains a cycle
        """
        logger.debug(f"Loading template '{name}'")
        return self.load_document(self.source.fetch(name), name)

    def load_document(self, raw: Any, name: Optional[str] = None) -> Template:
        """Validate and resolve an in-memory document; bases come from the source."""
        label = name or _document_name(raw) or "<document>"
        template = self._parse(label, raw)
        cache: Dict[str, Template] = {}

        def lookup(base_name: str) -> Template:
            if base_name not in cache:
                cache[base_name] = self._parse(base_name, self.source.fetch(base_name))
            return cache[base_name]

        try:
            resolved = self.resolver.resolve(template, lookup)
        except InvalidLocatorError as e:
            raise TemplateLoadError(
                f"Template '{label}' has an invalid locator: {e.message}",
                template=label,
                cause=e,
            ) from e

        issues = self._check_resolved(resolved)
        if issues:
            raise TemplateLoadError(
                f"Resolved template '{label}' is incomplete ({len(issues)} issue(s))",
                template=label,
                validation_errors=issues,
            )
        logger.info(
            f"Loaded template '{resolved.name}' with {len(resolved.resources)} resource(s)"
        )
        return resolved

    def validate(self, name: str) -> List[ValidationIssue]:
        """Validate one document without resolving it."""
        return self.validator.validate(self.source.fetch(name))

    def _parse(self, name: str, raw: Any) -> Template:
        issues = self.validator.validate(raw)
        if issues:
            raise TemplateLoadError(
                f"Template '{name}' failed validation with {len(issues)} issue(s)",
                template=name,
                validation_errors=issues,
            )
        try:
            return parse_template(raw)
        except ValidationError as e:
            raise TemplateLoadError(
                f"Template '{name}' could not be parsed: {e}", template=name, cause=e
            ) from e

    @staticmethod
    def _check_resolved(template: Template) -> List[ValidationIssue]:
        issues = []
        for index, descriptor in enumerate(template.resources.application):
            if not isinstance(descriptor, ApplicationDescriptor):
                continue
            if not descriptor.discovery_command:
                issues.append(
                    ValidationIssue(
                        f"resources.application[{index}].discovery_command",
                        f"is required for '{descriptor.label}' after inheritance",
                    )
                )
        return issues


def _document_name(raw: Any) -> Optional[str]:
    if isinstance(raw, Mapping) and isinstance(raw.get("metadata"), Mapping):
        name = raw["metadata"].get("name")
        return name if isinstance(name, str) else None
    return None


def load_template(
    name: str,
    source: TemplateSource,
    normalizer: Optional[LocatorNormalizer] = None,
) -> Template:
    """Convenience function: load and resolve ``name`` from ``source``."""
    return TemplateLoader(source, normalizer=normalizer).load(name)
