"""
Configuration models for the state engine.

Provides type-safe settings using pydantic with validation, defaults and
schema enforcement. Unknown keys are rejected so typos in the settings file
surface immediately.
"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class RegistryBackendKind(str, Enum):
    """Where registry resources are read from and written to."""

    AUTO = "auto"
    WINDOWS = "windows"
    FILE = "file"


class RegistrySettings(BaseModel):
    """Registry backend settings."""

    backend: RegistryBackendKind = Field(
        default=RegistryBackendKind.AUTO,
        description="auto uses the live registry on Windows and a directory elsewhere",
    )
    root: Optional[Path] = Field(
        default=None,
        description="Directory holding the file-backed registry",
    )

    model_config = ConfigDict(extra="forbid")


class EncryptionSettings(BaseModel):
    """Field encryption settings."""

    passphrase: Optional[SecretStr] = Field(
        default=None,
        description="Passphrase for field encryption; machine-bound key when unset",
    )
    salt: str = Field(
        default="statekeeper-field-encryption-v1",
        description="Key derivation salt",
    )
    iterations: Annotated[int, Field(ge=10_000)] = Field(
        default=390_000,
        description="PBKDF2 iterations",
    )

    model_config = ConfigDict(extra="forbid")


class CommandSettings(BaseModel):
    """Host command settings for application/task providers and prerequisites."""

    timeout_seconds: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds before a host command is killed",
    )
    default_shell: Optional[str] = Field(
        default=None,
        description="Shell for script commands (powershell on Windows, sh elsewhere)",
    )

    model_config = ConfigDict(extra="forbid")


class LocatorSettings(BaseModel):
    """Locator normalization settings."""

    drive_map: Dict[str, str] = Field(
        default_factory=dict,
        description="Drive letter -> UNC share, e.g. {'Z:': '\\\\\\\\server\\\\share'}",
    )
    expand_environment: bool = Field(
        default=True,
        description="Expand environment variables in template addresses",
    )

    model_config = ConfigDict(extra="forbid")


class EngineSettings(BaseModel):
    """Complete engine configuration."""

    templates_dir: Path = Field(
        default=Path("templates"),
        description="Directory searched for template documents",
    )
    state_dir: Optional[Path] = Field(
        default=None,
        description="Default directory for StateRecords (BACKUP_ROOT)",
    )
    machine_name: Optional[str] = Field(
        default=None,
        description="Machine name stamped into StateRecords; host name when unset",
    )
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    encryption: EncryptionSettings = Field(default_factory=EncryptionSettings)
    commands: CommandSettings = Field(default_factory=CommandSettings)
    locators: LocatorSettings = Field(default_factory=LocatorSettings)
    protected_roots: Optional[List[str]] = Field(
        default=None,
        description="Filesystem roots that require elevation; built-in list when unset",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("machine_name")
    @classmethod
    def validate_machine_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("machine_name cannot be blank")
        return v.strip() if v else v
