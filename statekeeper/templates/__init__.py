"""
Template documents: models, schema validation, inheritance and loading.
"""

from .inheritance import InheritanceResolver
from .loader import (
    DirectoryTemplateSource,
    InMemoryTemplateSource,
    TemplateLoader,
    TemplateSource,
    load_template,
)
from .models import (
    KIND_ORDER,
    ApplicationDescriptor,
    FieldSpec,
    FieldType,
    FileDescriptor,
    Policy,
    Prerequisite,
    RegistryDescriptor,
    ResourceDescriptor,
    ResourceSet,
    ScheduledTaskDescriptor,
    Template,
    TemplateMetadata,
)
from .schema import SchemaValidator, ValidationIssue

__all__ = [
    "KIND_ORDER",
    "ApplicationDescriptor",
    "DirectoryTemplateSource",
    "FieldSpec",
    "FieldType",
    "FileDescriptor",
    "InMemoryTemplateSource",
    "InheritanceResolver",
    "Policy",
    "Prerequisite",
    "RegistryDescriptor",
    "ResourceDescriptor",
    "ResourceSet",
    "ScheduledTaskDescriptor",
    "SchemaValidator",
    "Template",
    "TemplateLoader",
    "TemplateMetadata",
    "TemplateSource",
    "ValidationIssue",
    "load_template",
]
