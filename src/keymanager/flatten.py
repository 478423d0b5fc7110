"""Translate key service payloads into persisted snapshots."""

from __future__ import annotations

from datetime import UTC, datetime

from .models import (
    EncryptionKey,
    EncryptionKeySnapshot,
    KeyState,
    ManagedRootKey,
    WrappingKey,
)


def format_timestamp(value: datetime | None) -> str:
    """Render a timestamp as RFC 3339 with millisecond precision."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def flatten_key(key: EncryptionKey) -> EncryptionKeySnapshot:
    return EncryptionKeySnapshot(
        key_id=key.key_id,
        type=key.type.value,
        state=key.state.value,
        parent_key_id=key.parent_key_id or "",
        created_at=format_timestamp(key.created_at),
        updated_at=format_timestamp(key.updated_at),
    )


def flatten_keys(keys: list[EncryptionKey]) -> list[EncryptionKeySnapshot]:
    return [flatten_key(key) for key in keys]


def flatten_root_key(
    current: ManagedRootKey | None,
    *,
    root_key: EncryptionKey | None = None,
    wrapping_key: WrappingKey | None = None,
    wrapped_key: str | None = None,
) -> ManagedRootKey:
    """Merge fresh key data into the managed root key snapshot.

    Fields not covered by the arguments keep their current values. The
    wrapping key fields are cleared as soon as the key has left
    pre-activation, since the server no longer accepts imports for it.
    """
    result = current.model_copy() if current is not None else ManagedRootKey()

    if root_key is not None:
        result.key_id = root_key.key_id
        result.parent_key_id = root_key.parent_key_id or ""
        result.type = root_key.type.value
        result.state = root_key.state.value
        result.created_at = format_timestamp(root_key.created_at)
        result.updated_at = format_timestamp(root_key.updated_at)
        if root_key.state != KeyState.PRE_ACTIVATION:
            result.public_wrapping_key = None
            result.wrapping_algorithm = None

    if wrapping_key is not None:
        result.public_wrapping_key = wrapping_key.public_key
        result.wrapping_algorithm = wrapping_key.algorithm

    if wrapped_key is not None:
        result.wrapped_key = wrapped_key

    return result
