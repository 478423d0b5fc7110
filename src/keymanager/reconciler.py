"""Reconciliation loop for the tenant encryption key manager.

Each pass:
1. Loads the declared configuration from YAML
2. Loads the state persisted by the last successful pass
3. Rotates all keys if the rotation token changed
4. Plans and applies one root key action
5. Reads back the key listing and persists the new state

Passes for one tenant are serialized by a per-tenant lock. State is only
persisted after a pass succeeds, so a failed pass is retried from the
last good state and resumes any key it left in pre-activation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError

from .config import Config, ConfigurationError
from .credentials import get_management_credential
from .keystore import KeyStore, KeyStoreClient
from .models import ManagerState
from .provisioner import ProvisionerSettings, RootKeyProvisioner, UnexpectedKeyStateError
from .rotation import KeyRotationController
from .spec_loader import SpecLoadError, load_spec
from .state import NOOP, ActionKind, RootKeyAction, StateReconciler
from .store import StateStore, StateStoreError, TenantLocks
from .wait import PollCancelledError, PollTimeoutError

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300


@dataclass
class ReconcileResult:
    """Result of a single reconciliation, refresh or destroy."""

    tenant: str
    operation: str = "reconcile"
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    action: RootKeyAction = NOOP
    rotated: bool = False
    dry_run: bool = False
    state: ManagerState | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the operation succeeded."""
        return self.error is None


class Reconciler:
    """Keeps one tenant's encryption keys in line with the declared configuration.

    Circuit breaker prevents runaway retries against the key service on
    persistent failures. Shutdown cancels in-flight polling loops at their
    next interval.
    """

    def __init__(self, config: Config, keystore: KeyStore | None = None) -> None:
        """Wire the key service client, state store and key workflows.

        Args:
            config: Validated operator configuration.
            keystore: Key service client. Built from config when omitted.
        """
        self._config = config
        self._tenant = config.tenant_domain
        self._shutdown_event = asyncio.Event()

        self._owned_client: KeyStoreClient | None = None
        if keystore is None:
            self._owned_client = KeyStoreClient(
                tenant_domain=config.tenant_domain,
                credential=get_management_credential(config),
                audience=config.management_audience,
            )
            keystore = self._owned_client
        self._keystore = keystore

        self._store = StateStore(config.state_dir)
        self._locks = TenantLocks()

        audit_logging = config.security.enable_audit_logging
        provisioner = RootKeyProvisioner(
            keystore,
            self._tenant,
            ProvisionerSettings(
                create_poll=config.create_poll,
                import_poll=config.import_poll,
                delete_poll=config.delete_poll,
                audit_logging=audit_logging,
            ),
            cancel_event=self._shutdown_event,
        )
        rotation = KeyRotationController(keystore, self._tenant, audit_logging=audit_logging)
        self._state = StateReconciler(
            keystore, self._tenant, provisioner, rotation, dry_run=config.dry_run
        )

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def locks(self) -> TenantLocks:
        return self._locks

    async def run(self) -> None:
        """Reconcile every interval until shutdown() is called.

        After MAX_CONSECUTIVE_FAILURES the circuit opens and reconciliation
        pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "tenant": self._tenant,
                "spec_path": str(self._config.spec_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping key reconciliation",
                        extra={
                            "tenant": self._tenant,
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._sleep(min(remaining, self._config.reconcile_interval_seconds))
                    continue

                logger.info(
                    "Circuit breaker closed, resuming key reconciliation",
                    extra={"tenant": self._tenant},
                )
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_once()
            self._record_outcome(result)

            await self._sleep(self._config.reconcile_interval_seconds)

        self.close()
        logger.info("Reconciler shutdown complete", extra={"tenant": self._tenant})

    def shutdown(self) -> None:
        """Stop the loop and cancel in-flight key polling."""
        logger.info("Shutdown requested", extra={"tenant": self._tenant})
        self._shutdown_event.set()

    def close(self) -> None:
        if self._owned_client is not None:
            self._owned_client.close()

    async def reconcile_once(self) -> ReconcileResult:
        """Execute a single create/update pass and persist the result."""

        async def body(result: ReconcileResult) -> None:
            declared = load_spec(self._config.spec_path)
            prior = self._store.load(self._tenant)
            pass_result = await self._state.reconcile(declared, prior)

            result.action = pass_result.action
            result.rotated = pass_result.rotated
            result.state = pass_result.state
            if not self._config.dry_run:
                self._store.save(pass_result.state)

        return await self._execute("reconcile", body)

    async def refresh(self) -> ReconcileResult:
        """Re-read the key listing into the persisted state without mutating keys."""

        async def body(result: ReconcileResult) -> None:
            prior = self._store.load(self._tenant) or ManagerState(tenant=self._tenant)
            result.state = await self._state.read(prior)
            if not self._config.dry_run:
                self._store.save(result.state)

        return await self._execute("refresh", body)

    async def destroy(self) -> ReconcileResult:
        """Remove the managed root key and forget the persisted state.

        Rotation has no teardown: rekeyed keys stay rekeyed.
        """

        async def body(result: ReconcileResult) -> None:
            prior = self._store.load(self._tenant)
            removed = await self._state.destroy(prior)
            if removed and prior is not None and prior.root_key_id is not None:
                result.action = RootKeyAction(ActionKind.REMOVE, key_id=prior.root_key_id)
            if not self._config.dry_run:
                self._store.delete(self._tenant)

        return await self._execute("destroy", body)

    async def _execute(
        self,
        operation: str,
        body: Callable[[ReconcileResult], Awaitable[None]],
    ) -> ReconcileResult:
        result = ReconcileResult(
            tenant=self._tenant, operation=operation, dry_run=self._config.dry_run
        )

        try:
            async with self._locks.lock_for(self._tenant):
                await body(result)
        except SpecLoadError as e:
            logger.error("Failed to load declared configuration", extra={"error": str(e)})
            result.error = e
        except ConfigurationError as e:
            logger.error("Invalid configuration", extra={"error": str(e)})
            result.error = e
        except StateStoreError as e:
            logger.error("State store error", extra={"error": str(e)})
            result.error = e
        except PollCancelledError as e:
            logger.warning(
                "Polling cancelled by shutdown",
                extra={"tenant": self._tenant, "operation": e.operation},
            )
            result.error = e
        except (PollTimeoutError, UnexpectedKeyStateError) as e:
            logger.error(
                "Root key did not reach the expected state",
                extra={"tenant": self._tenant, "error": str(e), "key_id": e.key_id},
            )
            result.error = e
        except HttpResponseError as e:
            logger.error(
                "Management API error",
                extra={"error": str(e), "status_code": e.status_code},
            )
            result.error = e
        except AzureError as e:
            logger.error("Key service error", extra={"error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception(f"Unexpected error during {operation}")
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _record_outcome(self, result: ReconcileResult) -> None:
        if result.error is None:
            self._consecutive_failures = 0
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after repeated failed passes",
                extra={
                    "tenant": self._tenant,
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log the result with structured data."""
        extra: dict[str, Any] = {
            "tenant": result.tenant,
            "operation": result.operation,
            "duration_seconds": result.duration_seconds,
            "action": result.action.kind.value,
            "rotated": result.rotated,
            "dry_run": result.dry_run,
        }
        if result.state is not None:
            extra["root_key_id"] = result.state.root_key_id
            extra["key_count"] = len(result.state.encryption_keys)

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error(f"{result.operation.capitalize()} failed", extra=extra)
        else:
            logger.info(f"{result.operation.capitalize()} result", extra=extra)
