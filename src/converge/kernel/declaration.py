"""Pydantic models for declared resources with strict validation."""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


def make_address(resource_type: str, name: str) -> str:
    """Build the stable identity of a resource, e.g. "aws_s3_bucket.redirect"."""
    return f"{resource_type}.{name}"


def split_address(address: str) -> tuple[str, str]:
    """Split an address into (type, name).

    Raises:
        ValueError: If the address is not of the form TYPE.NAME
    """
    parts = address.split(".")
    if len(parts) != 2 or not all(_NAME_RE.match(p) for p in parts):
        raise ValueError(f"Invalid resource address '{address}' (expected TYPE.NAME)")
    return parts[0], parts[1]


class Lifecycle(BaseModel):
    """Per-resource lifecycle flags."""
    model_config = ConfigDict(extra="forbid")

    immutable: tuple[str, ...] = Field(
        default=(),
        description="Attributes whose change forces delete + create instead of update"
    )
    prevent_destroy: bool = False
    ignore_changes: tuple[str, ...] = Field(
        default=(),
        description="Attributes excluded from diffs once the resource exists"
    )

    @field_validator("immutable", "ignore_changes")
    @classmethod
    def canonicalize_names(cls, v: List[str]) -> tuple[str, ...]:
        """Canonicalize attribute name lists to sorted tuples without duplicates."""
        return tuple(sorted(set(v)))


class VariableDeclaration(BaseModel):
    """An input variable. A variable without a default is required."""
    model_config = ConfigDict(extra="forbid")

    default: Any = None
    description: Optional[str] = None
    required: bool = False

    @model_validator(mode="before")
    @classmethod
    def mark_required(cls, data: Any) -> Any:
        # Absence of the "default" key (not a null default) makes the variable required
        if isinstance(data, dict) and "default" not in data and "required" not in data:
            data = dict(data)
            data["required"] = True
        return data


class ResourceDeclaration(BaseModel):
    """A declared resource: what should exist, not how to make it exist."""
    model_config = ConfigDict(extra="forbid")

    type: str
    name: str
    provider: Optional[str] = None  # Defaults to the type prefix, "aws_s3_bucket" -> "aws"
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @field_validator("type", "name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(
                f"'{v}' is not a valid identifier (letters, digits, '_' and '-', not starting with a digit)"
            )
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> tuple[str, ...]:
        """Validate explicit dependencies are addresses; keep declaration order, drop duplicates."""
        seen: Dict[str, None] = {}
        for address in v:
            split_address(address)
            seen.setdefault(address, None)
        return tuple(seen)

    @property
    def address(self) -> str:
        return make_address(self.type, self.name)

    @property
    def provider_name(self) -> str:
        if self.provider:
            return self.provider
        return self.type.split("_", 1)[0]


class Declarations(BaseModel):
    """A complete set of declared resources plus the variables they use."""
    model_config = ConfigDict(extra="forbid")

    config_version: str = "1"
    variables: Dict[str, VariableDeclaration] = Field(default_factory=dict)
    resources: List[ResourceDeclaration] = Field(default_factory=list)

    def get_addresses(self) -> List[str]:
        """Get all resource addresses in declaration order."""
        return [r.address for r in self.resources]

    def get_resource(self, address: str) -> ResourceDeclaration | None:
        """Get a resource declaration by address."""
        for r in self.resources:
            if r.address == address:
                return r
        return None
