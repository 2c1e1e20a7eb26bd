"""
Template inheritance resolution.

A template may extend one or more base templates through
``metadata.extends``. The resolver linearizes the ancestor chain depth-first
(each base before the templates that extend it, every template once) and
applies it oldest-first into an accumulator keyed by ``(kind, locator)``:

- a descriptor whose locator is already present overwrites only the fields
  and policy flags it sets explicitly; inherited fields survive
- a descriptor with a new locator is appended
- prerequisites merge by name, later definitions replacing earlier ones

List-valued descriptor attributes are replaced wholesale, never unioned.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from ..exceptions import CyclicInheritanceError, InheritanceError
from ..locator import LocatorNormalizer
from .models import KIND_ORDER, Prerequisite, ResourceDescriptor, ResourceSet, Template

logger = logging.getLogger(__name__)

TemplateLookup = Callable[[str], Template]

MAX_INHERITANCE_DEPTH = 64


class InheritanceResolver:
    """Merges a template with the chain of templates it extends."""

    def __init__(self, normalizer: Optional[LocatorNormalizer] = None):
        self.normalizer = normalizer or LocatorNormalizer()

    def ancestor_chain(self, template: Template, lookup: TemplateLookup) -> List[Template]:
        """
        Build the linear ancestor chain of ``template``.

        Args:
            template: Unresolved template to start from
            lookup: Returns the unresolved template for a base name

        Returns:
            Templates oldest-first, ending with ``template`` itself

        Raises:
            CyclicInheritanceError: If a name reappears in its own chain
            InheritanceError: If the chain is unreasonably deep
        """
        chain: List[Template] = []
        self._linearize(template, lookup, [], set(), chain)
        return chain

    def _linearize(
        self,
        template: Template,
        lookup: TemplateLookup,
        path: List[str],
        seen: Set[str],
        out: List[Template],
    ) -> None:
        name = template.name
        if name in path:
            raise CyclicInheritanceError(path[path.index(name) :] + [name])
        if name in seen:
            return
        if len(path) >= MAX_INHERITANCE_DEPTH:
            raise InheritanceError(
                f"Inheritance chain of '{path[0]}' exceeds {MAX_INHERITANCE_DEPTH} levels"
            )
        path.append(name)
        for base_name in template.metadata.extends:
            if base_name in path:
                raise CyclicInheritanceError(path[path.index(base_name) :] + [base_name])
            self._linearize(lookup(base_name), lookup, path, seen, out)
        path.pop()
        seen.add(name)
        out.append(template)

    def resolve(self, template: Template, lookup: TemplateLookup) -> Template:
        """
        Resolve ``template`` against its ancestors.

        Returns:
            A new, fully merged Template whose descriptors carry normalized
            locators and whose ``lineage`` lists the chain oldest-first
        """
        chain = self.ancestor_chain(template, lookup)
        merged: Dict[str, Dict[str, ResourceDescriptor]] = {kind: {} for kind in KIND_ORDER}
        prerequisites: Dict[str, Prerequisite] = {}

        for document in chain:
            for kind in KIND_ORDER:
                bucket = merged[kind]
                for descriptor in document.resources.of_kind(kind):
                    locator = self.normalizer.normalize(descriptor.path, kind)
                    existing = bucket.get(locator.key)
                    if existing is None:
                        bucket[locator.key] = descriptor.with_locator(locator)
                    else:
                        bucket[locator.key] = existing.merge(descriptor)
            for prerequisite in document.prerequisites:
                prerequisites[prerequisite.name] = prerequisite

        lineage = [document.name for document in chain]
        if len(lineage) > 1:
            logger.debug(f"Resolved template '{template.name}' through {' -> '.join(lineage)}")

        return Template(
            metadata=template.metadata,
            resources=ResourceSet(**{kind: list(merged[kind].values()) for kind in KIND_ORDER}),
            prerequisites=list(prerequisites.values()),
            lineage=lineage,
        )
