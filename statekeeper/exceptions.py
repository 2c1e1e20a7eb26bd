"""
Custom Exception Hierarchy for statekeeper

This module provides the exception hierarchy shared by the template layer,
the resource providers and the executor. Every error carries an error code,
optional context, the underlying cause and an optional recovery suggestion.

Template, validation and inheritance errors are hard failures raised before
any system resource is touched. Provider errors are recovered by the executor
into per-resource results unless the descriptor is marked required.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .templates.schema import ValidationIssue


class StateKeeperError(Exception):
    """
    Base exception class for all statekeeper errors.

    Provides structured error information including context, error codes,
    and optional recovery suggestions.
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recovery_suggestion: Optional[str] = None,
    ) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
            context: Optional dictionary with error context
            cause: Optional underlying exception that caused this error
            recovery_suggestion: Optional suggestion for error recovery
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.cause = cause
        self.recovery_suggestion = recovery_suggestion

    def __str__(self) -> str:
        """Return a formatted error message with context."""
        result = self.message
        if self.error_code:
            result = f"[{self.error_code}] {result}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            result += f" (context: {context_str})"
        if self.cause:
            result += f" (caused by: {self.cause})"
        if self.recovery_suggestion:
            result += f" (suggestion: {self.recovery_suggestion})"
        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "recovery_suggestion": self.recovery_suggestion,
        }


class InvalidLocatorError(StateKeeperError):
    """Raised when a resource address is empty or malformed."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        kind: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if address is not None:
            context["address"] = address
        if kind:
            context["kind"] = kind
        kwargs["context"] = context
        kwargs.setdefault("error_code", "INVALID_LOCATOR")
        super().__init__(message, **kwargs)
        self.address = address
        self.kind = kind


# Template-related exceptions
class TemplateError(StateKeeperError):
    """Base class for template loading and resolution errors."""

    pass


class TemplateNotFoundError(TemplateError):
    """Raised when a template document cannot be found in its source."""

    def __init__(self, name: str, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        context["template"] = name
        kwargs["context"] = context
        kwargs.setdefault("error_code", "TEMPLATE_NOT_FOUND")
        kwargs.setdefault(
            "recovery_suggestion",
            "Check the templates directory and the template's metadata.name",
        )
        super().__init__(f"Template not found: {name}", **kwargs)
        self.name = name


class TemplateLoadError(TemplateError):
    """Raised when a template fails validation or cannot be read."""

    def __init__(
        self,
        message: str,
        template: Optional[str] = None,
        validation_errors: Optional[Sequence["ValidationIssue"]] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if template:
            context["template"] = template
        if validation_errors:
            context["issues"] = len(validation_errors)
        kwargs["context"] = context
        kwargs.setdefault("error_code", "TEMPLATE_LOAD_FAILED")
        super().__init__(message, **kwargs)
        self.template = template
        self.validation_errors: List["ValidationIssue"] = list(validation_errors or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["validation_errors"] = [str(issue) for issue in self.validation_errors]
        return data


class InheritanceError(TemplateError):
    """Raised when a template's ancestor chain cannot be resolved."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "INHERITANCE_FAILED")
        super().__init__(message, **kwargs)


class CyclicInheritanceError(InheritanceError):
    """Raised when a template name reappears in its own ancestor chain."""

    def __init__(self, chain: Sequence[str], **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        context["chain"] = " -> ".join(chain)
        kwargs["context"] = context
        kwargs.setdefault("error_code", "CYCLIC_INHERITANCE")
        super().__init__(
            f"Cyclic template inheritance detected at '{chain[-1]}'", **kwargs
        )
        self.chain = list(chain)


# Encryption-related exceptions
class EncryptionError(StateKeeperError):
    """Raised when key material cannot be derived or a value cannot be protected."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "ENCRYPTION_FAILED")
        super().__init__(message, **kwargs)


class DecryptionError(StateKeeperError):
    """Raised when a blob is not ciphertext or was produced by a different key."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field
        kwargs["context"] = context
        kwargs.setdefault("error_code", "DECRYPTION_FAILED")
        kwargs.setdefault(
            "recovery_suggestion",
            "Restore with the same passphrase or machine that produced the snapshot",
        )
        super().__init__(message, **kwargs)
        self.field = field


# Provider-related exceptions
class ProviderError(StateKeeperError):
    """Base class for errors raised while capturing or applying one resource."""

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        locator: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if kind:
            context["kind"] = kind
        if locator:
            context["locator"] = locator
        kwargs["context"] = context
        kwargs.setdefault("error_code", "PROVIDER_FAILED")
        super().__init__(message, **kwargs)
        self.kind = kind
        self.locator = locator


class ResourceMissingError(ProviderError):
    """Raised when a required live resource does not exist at capture time."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "RESOURCE_MISSING")
        super().__init__(message, **kwargs)


class StateRecordNotFoundError(ProviderError):
    """Raised when a required resource has no snapshot record to apply."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "STATE_RECORD_NOT_FOUND")
        kwargs.setdefault(
            "recovery_suggestion", "Run a backup into this state directory first"
        )
        super().__init__(message, **kwargs)


class CaptureFailedError(ProviderError):
    """Raised when the live value of a resource cannot be read."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "CAPTURE_FAILED")
        super().__init__(message, **kwargs)


class ApplyFailedError(ProviderError):
    """Raised when recorded values cannot be written back to a resource."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "APPLY_FAILED")
        super().__init__(message, **kwargs)


class UnsupportedFieldError(ProviderError):
    """Raised when a descriptor declares a field its provider cannot handle."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field
        kwargs["context"] = context
        kwargs.setdefault("error_code", "UNSUPPORTED_FIELD")
        super().__init__(message, **kwargs)
        self.field = field


class UnsupportedResourceKindError(StateKeeperError):
    """Raised when no provider is registered for a resource kind."""

    def __init__(self, kind: str, **kwargs: Any) -> None:
        context = kwargs.get("context", {})
        context["kind"] = kind
        kwargs["context"] = context
        kwargs.setdefault("error_code", "UNSUPPORTED_KIND")
        super().__init__(f"No provider registered for resource kind '{kind}'", **kwargs)
        self.kind = kind


class CommandExecutionError(StateKeeperError):
    """Raised when a host command cannot be started or times out."""

    def __init__(
        self, message: str, command: Optional[Sequence[str]] = None, **kwargs: Any
    ) -> None:
        context = kwargs.get("context", {})
        if command:
            context["command"] = " ".join(command)
        kwargs["context"] = context
        kwargs.setdefault("error_code", "COMMAND_FAILED")
        super().__init__(message, **kwargs)
        self.command = list(command) if command else []


class ConfigError(StateKeeperError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "CONFIG_INVALID")
        super().__init__(message, **kwargs)


class PlanError(StateKeeperError):
    """Raised when an execution plan document is invalid."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "PLAN_INVALID")
        super().__init__(message, **kwargs)


def wrap_os_error(
    exc: OSError,
    kind: str,
    locator: str,
    applying: bool = False,
) -> ProviderError:
    """
    Wrap an OSError raised by a provider in the provider exception hierarchy.

    Args:
        exc: The original exception
        kind: Resource kind being processed
        locator: Display form of the resource locator
        applying: True when the error happened while applying

    Returns:
        ProviderError: Wrapped exception with kind and locator context
    """
    error_cls = ApplyFailedError if applying else CaptureFailedError
    verb = "apply" if applying else "capture"
    suggestion = None
    if isinstance(exc, PermissionError):
        suggestion = "Re-run from an elevated shell"
    return error_cls(
        f"Failed to {verb} {kind} resource: {exc}",
        kind=kind,
        locator=locator,
        cause=exc,
        recovery_suggestion=suggestion,
    )
