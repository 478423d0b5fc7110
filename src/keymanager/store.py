"""Persistence of reconciliation state and per-tenant locking.

State is stored as one JSON document per tenant. Writes go to a temporary
file that replaces the previous document, so a crash mid-write leaves the
last good state in place.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import ManagerState

logger = logging.getLogger(__name__)

STATE_FILE_MODE = 0o600


class StateStoreError(Exception):
    """Raised when persisted state cannot be read or written."""

    pass


def _state_file_name(tenant: str) -> str:
    # Tenant domains are hostnames; anything else is replaced to keep the
    # name inside the state directory.
    return re.sub(r"[^a-zA-Z0-9.-]", "_", tenant) + ".json"


class StateStore:
    """Loads and saves ManagerState documents under a directory."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    def path_for(self, tenant: str) -> Path:
        return self._state_dir / _state_file_name(tenant)

    def load(self, tenant: str) -> ManagerState | None:
        """Load the persisted state for a tenant.

        Returns:
            The stored state, or None if nothing was persisted yet.

        Raises:
            StateStoreError: If the file is unreadable, too large or invalid.
        """
        path = self.path_for(tenant)
        if not path.exists():
            return None

        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {path}: {e}") from e

        try:
            state = ManagerState.model_validate_json(content)
        except ValidationError as e:
            raise StateStoreError(f"Invalid state in {path}: {e}") from e

        if state.tenant != tenant:
            raise StateStoreError(
                f"State file {path} belongs to tenant '{state.tenant}', not '{tenant}'"
            )
        return state

    def save(self, state: ManagerState) -> Path:
        """Persist state for its tenant, replacing any previous document."""
        path = self.path_for(state.tenant)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
            tmp_path.chmod(STATE_FILE_MODE)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {path}: {e}") from e

        logger.debug("Saved state", extra={"tenant": state.tenant, "path": str(path)})
        return path

    def delete(self, tenant: str) -> bool:
        """Remove the persisted state for a tenant. Returns True if it existed."""
        path = self.path_for(tenant)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateStoreError(f"Failed to delete state file {path}: {e}") from e
        return True


class TenantLocks:
    """One asyncio.Lock per tenant.

    The managed root key is a tenant-wide singleton, so every
    read-decide-act sequence for a tenant runs under its lock. Locks only
    exclude passes within this process.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, tenant: str) -> asyncio.Lock:
        key = tenant.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, tenant: str) -> bool:
        lock = self._locks.get(tenant.lower())
        return lock is not None and lock.locked()
