"""Customer-provided root key provisioning workflows.

The key service performs generation, wrapping and activation
asynchronously. Each workflow issues one mutating call and then polls the
key until the server reports the expected state:

    create  -> wait until visible -> request wrapping key
    import  -> wait until active
    delete  -> wait until destroyed

No workflow rolls back earlier steps on failure. A key left in
pre-activation without a wrapping key is resumed on the next pass through
ensure_wrapping_key() instead of creating a second root key.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from azure.core.exceptions import AzureError, ResourceNotFoundError

from .config import DEFAULT_CREATE_POLL, DEFAULT_DELETE_POLL, DEFAULT_IMPORT_POLL, PollSettings
from .credentials import log_security_audit_event
from .keystore import KeyStore, call_keystore
from .models import EncryptionKey, KeyState, KeyType, WrappingKey
from .wait import PollTimeoutError, Predicate, until

logger = logging.getLogger(__name__)

# States a key never leaves once reached
TERMINAL_STATES = frozenset({KeyState.DEACTIVATED, KeyState.DESTROYED})


class UnexpectedKeyStateError(Exception):
    """Raised when a key reaches a terminal state other than the one awaited."""

    def __init__(self, key_id: str, state: KeyState, expected: KeyState) -> None:
        self.key_id = key_id
        self.state = state
        self.expected = expected
        super().__init__(
            f"Key {key_id} reached state '{state.value}' while waiting for '{expected.value}'"
        )


@dataclass(frozen=True)
class ProvisionerSettings:
    """Polling budgets for each workflow."""

    create_poll: PollSettings = DEFAULT_CREATE_POLL
    import_poll: PollSettings = DEFAULT_IMPORT_POLL
    delete_poll: PollSettings = DEFAULT_DELETE_POLL
    audit_logging: bool = True


class RootKeyProvisioner:
    """Drives create, import and remove for customer-provided root keys."""

    def __init__(
        self,
        keystore: KeyStore,
        tenant: str,
        settings: ProvisionerSettings | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._keystore = keystore
        self._tenant = tenant
        self._settings = settings or ProvisionerSettings()
        self._cancel_event = cancel_event

    async def create_root_key(self) -> tuple[EncryptionKey, WrappingKey]:
        """Create a root key, wait for it to appear, then fetch its wrapping key.

        Returns:
            The new key (in pre-activation) and its public wrapping key.

        Raises:
            PollTimeoutError: If the key never becomes readable.
            AzureError: On any remote failure, unchanged.
        """
        try:
            key = await call_keystore(
                self._keystore.create_key, KeyType.CUSTOMER_PROVIDED_ROOT_KEY
            )
        except AzureError as e:
            self._log_failure("create_root_key", None, e)
            raise

        logger.info(
            "Root key created, waiting for it to become visible",
            extra={"tenant": self._tenant, "key_id": key.key_id},
        )

        async def visible() -> bool:
            try:
                await call_keystore(self._keystore.read_key, key.key_id)
            except ResourceNotFoundError:
                return False
            return True

        try:
            await self._wait("root key visibility", key.key_id, self._settings.create_poll, visible)
        except (AzureError, PollTimeoutError) as e:
            self._log_failure("create_root_key", key.key_id, e)
            raise

        wrapping_key = await self.ensure_wrapping_key(key.key_id)
        return key, wrapping_key

    async def ensure_wrapping_key(self, key_id: str) -> WrappingKey:
        """Request a public wrapping key for a key in pre-activation.

        Safe to call again for the same key: the server issues a fresh
        wrapping key and only the latest one is used for import.
        """
        try:
            wrapping_key = await call_keystore(self._keystore.create_wrapping_key, key_id)
        except AzureError as e:
            self._log_failure("create_wrapping_key", key_id, e)
            raise

        logger.info(
            "Public wrapping key issued",
            extra={
                "tenant": self._tenant,
                "key_id": key_id,
                "algorithm": wrapping_key.algorithm,
            },
        )
        return wrapping_key

    async def import_wrapped_key(self, key_id: str, wrapped_key: str) -> None:
        """Import operator-wrapped key material and wait for activation.

        The caller must have verified that a wrapping key was produced for
        key_id before calling this.
        """
        self._audit("key_import", key_id, "requested")
        try:
            await call_keystore(self._keystore.import_wrapped_key, key_id, wrapped_key)
        except AzureError as e:
            self._log_failure("import_wrapped_key", key_id, e)
            self._audit("key_import", key_id, "failure")
            raise

        async def active() -> bool:
            state = (await call_keystore(self._keystore.read_key, key_id)).state
            if state in TERMINAL_STATES:
                raise UnexpectedKeyStateError(key_id, state, KeyState.ACTIVE)
            return state == KeyState.ACTIVE

        try:
            await self._wait("root key activation", key_id, self._settings.import_poll, active)
        except (AzureError, PollTimeoutError, UnexpectedKeyStateError) as e:
            self._log_failure("import_wrapped_key", key_id, e)
            self._audit("key_import", key_id, "failure")
            raise

        self._audit("key_import", key_id, "success")
        logger.info("Root key activated", extra={"tenant": self._tenant, "key_id": key_id})

    async def remove(self, key_id: str) -> None:
        """Delete a key and wait until the server reports it destroyed.

        A key that can no longer be read counts as destroyed, and so does a
        404 on the delete itself (an earlier delete already went through).
        """
        self._audit("key_delete", key_id, "requested")
        try:
            await call_keystore(self._keystore.delete_key, key_id)
        except ResourceNotFoundError:
            logger.info(
                "Root key already gone, treating it as destroyed",
                extra={"tenant": self._tenant, "key_id": key_id},
            )
            self._audit("key_delete", key_id, "success")
            return
        except AzureError as e:
            self._log_failure("remove", key_id, e)
            self._audit("key_delete", key_id, "failure")
            raise

        async def destroyed() -> bool:
            try:
                key = await call_keystore(self._keystore.read_key, key_id)
            except ResourceNotFoundError:
                return True
            return key.state == KeyState.DESTROYED

        try:
            await self._wait("root key destruction", key_id, self._settings.delete_poll, destroyed)
        except (AzureError, PollTimeoutError) as e:
            self._log_failure("remove", key_id, e)
            self._audit("key_delete", key_id, "failure")
            raise

        self._audit("key_delete", key_id, "success")
        logger.info("Root key destroyed", extra={"tenant": self._tenant, "key_id": key_id})

    async def _wait(
        self,
        operation: str,
        key_id: str,
        settings: PollSettings,
        predicate: Predicate,
    ) -> None:
        await until(
            settings.interval_seconds,
            settings.max_attempts,
            predicate,
            operation=operation,
            key_id=key_id,
            cancel_event=self._cancel_event,
        )

    def _audit(self, event_type: str, key_id: str, result: str) -> None:
        if self._settings.audit_logging:
            log_security_audit_event(
                event_type,
                tenant=self._tenant,
                target_key=key_id,
                action=event_type.split("_", 1)[-1],
                result=result,
            )

    def _log_failure(self, operation: str, key_id: str | None, error: Exception) -> None:
        logger.error(
            f"Root key {operation} failed",
            extra={
                "tenant": self._tenant,
                "operation": operation,
                "key_id": key_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
