"""Pydantic models for encryption keys, declared config and persisted state.

These models provide:
1. Parsing of Management API payloads (wire names like ``kid``)
2. Validation of the declared YAML configuration at the boundary
3. A JSON-serializable snapshot of what the last pass observed
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Key service payloads
# =============================================================================


class KeyType(str, Enum):
    """Types of encryption keys on a tenant."""

    TENANT_MASTER_KEY = "tenant-master-key"
    ENVIRONMENT_ROOT_KEY = "environment-root-key"
    CUSTOMER_PROVIDED_ROOT_KEY = "customer-provided-root-key"


class KeyState(str, Enum):
    """Server-driven lifecycle states of an encryption key."""

    PRE_ACTIVATION = "pre-activation"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DESTROYED = "destroyed"


class EncryptionKey(BaseModel):
    """A key instance on the remote key service."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key_id: str = Field(alias="kid")
    type: KeyType
    state: KeyState
    parent_key_id: str | None = Field(None, alias="parent_kid")
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_root_key_in(self, state: KeyState) -> bool:
        return self.type == KeyType.CUSTOMER_PROVIDED_ROOT_KEY and self.state == state


class WrappingKey(BaseModel):
    """Public key used to wrap customer key material before upload.

    Only valid while the owning key is in pre-activation.
    """

    model_config = ConfigDict(extra="ignore")

    public_key: str
    algorithm: str


class EncryptionKeyPage(BaseModel):
    """One page of a key listing."""

    model_config = ConfigDict(extra="ignore")

    keys: list[EncryptionKey] = Field(default_factory=list)
    start: int = 0
    limit: int = 0
    total: int = 0

    @property
    def has_next(self) -> bool:
        return self.start + self.limit < self.total


# =============================================================================
# Declared configuration
# =============================================================================


class RootKeyBlock(BaseModel):
    """Declared customer-provided root key.

    An empty block starts provisioning. ``wrapped_key`` is added once the
    public wrapping key has been published and the key material wrapped.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    wrapped_key: str | None = Field(None, alias="wrappedKey")

    @field_validator("wrapped_key")
    @classmethod
    def validate_wrapped_key(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        return v


class ManagerSpec(BaseModel):
    """Declared configuration of the tenant's encryption key manager."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    # Changing this value rotates every key on the tenant. A UUID is recommended.
    key_rotation_id: str | None = Field(None, alias="keyRotationId")
    customer_provided_root_key: RootKeyBlock | None = Field(
        None, alias="customerProvidedRootKey"
    )

    @property
    def wrapped_key(self) -> str | None:
        if self.customer_provided_root_key is None:
            return None
        return self.customer_provided_root_key.wrapped_key


# =============================================================================
# Persisted state
# =============================================================================


class EncryptionKeySnapshot(BaseModel):
    """Persisted, read-only view of one key."""

    key_id: str
    type: str
    state: str
    parent_key_id: str = ""
    created_at: str = ""
    updated_at: str = ""


class ManagedRootKey(BaseModel):
    """The single customer-provided root key managed for a tenant.

    Merges the key's server fields, its wrapping key while the key is in
    pre-activation, and the operator-supplied wrapped key, which is
    write-only and never read back from the server.
    """

    key_id: str = ""
    parent_key_id: str = ""
    type: str = ""
    state: str = ""
    created_at: str = ""
    updated_at: str = ""
    wrapped_key: str | None = None
    public_wrapping_key: str | None = None
    wrapping_algorithm: str | None = None

    @property
    def has_key(self) -> bool:
        return bool(self.key_id)

    @property
    def has_wrapping_key(self) -> bool:
        return bool(self.public_wrapping_key)


class ManagerState(BaseModel):
    """State that survives between reconciliation passes."""

    tenant: str
    key_rotation_id: str | None = None
    encryption_keys: list[EncryptionKeySnapshot] = Field(default_factory=list)
    managed_root_key: ManagedRootKey | None = None

    @property
    def root_key_id(self) -> str | None:
        if self.managed_root_key is None or not self.managed_root_key.has_key:
            return None
        return self.managed_root_key.key_id
