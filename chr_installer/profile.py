"""Install profiles.

An install profile is a YAML or JSON file holding the answers to the
installer's questions (version, mode, disk, network) so that the same
installation can be repeated across hosts. Command line flags override
profile values. The admin password is never read from a profile.
"""

import json
import re
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chr_installer.config import GIB
from chr_installer.errors import ValidationError
from chr_installer.types import InstallMode

VERSION_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?([a-z]+\d*)?$")


class NetworkProfile(BaseModel):
    """Network section of an install profile.

    Attributes:
        dhcp: Let the router use DHCP instead of the host's address.
        address: Static address in CIDR notation.
        gateway: Static default gateway.
        dns: DNS servers handed to the router.
    """

    model_config = ConfigDict(extra="forbid")

    dhcp: bool = Field(default=False, description="Use DHCP on the router")
    address: str | None = Field(default=None, description="Address in CIDR notation")
    gateway: str | None = Field(default=None, description="Default gateway")
    dns: list[str] | None = Field(default=None, description="DNS servers")


class InstallProfile(BaseModel):
    """Schema of an install profile file."""

    model_config = ConfigDict(extra="forbid")

    version: str | None = Field(default=None, description="RouterOS CHR version")
    mode: InstallMode | None = Field(default=None, description="standard or forced")
    disk: str | None = Field(default=None, description="Target disk (e.g. sda)")
    router_interface: str | None = Field(
        default=None, description="Router interface receiving the address"
    )
    image_size_bytes: int | None = Field(
        default=None, ge=GIB, description="Grow the image to this size"
    )
    network: NetworkProfile = Field(default_factory=NetworkProfile)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str | None) -> str | None:
        """Validate version looks like a RouterOS release."""
        if v is not None and not VERSION_PATTERN.match(v):
            raise ValueError(f"version must look like '7.19.4', got '{v}'")
        return v


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping from a file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON object from a file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_install_profile(path: Path) -> InstallProfile:
    """Load and validate an install profile (YAML or JSON).

    File format is determined by extension (.yaml, .yml or .json).

    Raises:
        ValidationError: The file is missing, unparsable or does not match
            the schema.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        loader = load_yaml
    elif suffix == ".json":
        loader = load_json
    else:
        raise ValidationError(
            f"Unsupported profile extension '{suffix}'. Use .yaml, .yml, or .json",
            error_code="profile_format",
        )

    try:
        return InstallProfile.model_validate(loader(path))
    except OSError as e:
        raise ValidationError(
            f"Cannot read profile {path}: {e}", error_code="profile_unreadable"
        ) from e
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid profile {path}: {e}", error_code="profile_invalid"
        ) from e
    except (yaml.YAMLError, ValueError) as e:
        raise ValidationError(
            f"Cannot parse profile {path}: {e}", error_code="profile_invalid"
        ) from e


__all__ = ["InstallProfile", "NetworkProfile", "load_install_profile"]
