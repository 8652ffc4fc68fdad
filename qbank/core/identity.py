"""
Caller identity for workflow operations.

The identity provider itself is external (authentication is handled by the
calling layer). This module defines the value object every workflow operation
receives explicitly, and a static provider used in development and tests.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol
import logging

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Workflow roles. Each stage role owns exactly one pipeline state."""
    GATHERER = "gatherer"
    CREATOR = "creator"
    EXPLAINER = "explainer"
    PROCESSOR = "processor"
    SUPERADMIN = "superadmin"


STAGE_ROLES = frozenset({Role.GATHERER, Role.CREATOR, Role.EXPLAINER, Role.PROCESSOR})


@dataclass(frozen=True)
class Identity:
    """
    An authenticated caller together with its single workflow role.
    """
    user_id: str
    role: Role
    email: Optional[str] = None
    full_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.user_id or not str(self.user_id).strip():
            raise ValueError("Identity requires a non-empty user_id")
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @property
    def is_super(self) -> bool:
        return self.role == Role.SUPERADMIN

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "email": self.email,
            "full_name": self.full_name,
            "metadata": dict(self.metadata),
        }


class IdentityProvider(Protocol):
    """Resolves an opaque credential to an Identity, or None when unknown."""

    def resolve(self, credential: str) -> Optional[Identity]:
        ...


class StaticIdentityProvider:
    """Credential table held in memory."""

    def __init__(self, identities: Optional[Mapping[str, Identity]] = None):
        self._identities: Dict[str, Identity] = dict(identities or {})

    def register(self, credential: str, identity: Identity) -> None:
        self._identities[credential] = identity

    def resolve(self, credential: str) -> Optional[Identity]:
        identity = self._identities.get(credential)
        if identity is None:
            logger.debug("Unknown credential presented to static identity provider")
        return identity
