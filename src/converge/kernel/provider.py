"""Uniform provider abstraction.

The kernel never speaks a specific remote API. Every resource type is
created, read, updated and deleted through an object implementing
``Provider``. Failures are raised as ``ProviderError``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class CreateResult:
    """What a provider returns after creating an object."""
    identifiers: Dict[str, Any]  # Enough to address the object later, e.g. {"id": "b-1"}
    outputs: Dict[str, Any] = field(default_factory=dict)  # Computed attributes, e.g. {"arn": "..."}


class Provider:
    """Base class for providers.

    Subclasses implement the four operations. ``attributes`` are always
    fully resolved JSON values; references have been substituted by the
    engine before the call.
    """

    name: str = "provider"

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> CreateResult:
        """Create an object.

        Raises:
            ProviderError: On failure. Set ``partial_identifiers`` when an
                object was created before the failure.
        """
        raise NotImplementedError

    def read(self, resource_type: str, identifiers: Dict[str, Any]) -> Dict[str, Any]:
        """Read the current attributes of an object.

        Raises:
            ResourceNotFoundError: If the object no longer exists
            ProviderError: On any other failure
        """
        raise NotImplementedError

    def update(
        self,
        resource_type: str,
        identifiers: Dict[str, Any],
        attributes: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Update an object in place and return its outputs."""
        raise NotImplementedError

    def delete(self, resource_type: str, identifiers: Dict[str, Any]) -> None:
        """Delete an object. Deleting an object that is already gone succeeds."""
        raise NotImplementedError
