"""Decide and apply root key actions from declared, prior and observed state.

Three views of the managed root key feed every pass:

- declared: what the operator wrote in the declared configuration file
- prior: what the last successful pass persisted
- observed: a fresh listing from the key service, reduced to the one
  customer-provided root key this operator manages

plan() turns these into exactly one RootKeyAction. The state machine of
the managed key is Absent -> PreActivation -> Active -> Destroyed ->
Absent, with PreActivation -> Destroyed for teardown before import.
Destroyed keys are never reused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .config import LIST_KEYS_PAGE_SIZE, ConfigurationError
from .flatten import flatten_keys, flatten_root_key
from .keystore import KeyStore, call_keystore
from .models import (
    EncryptionKey,
    KeyState,
    ManagedRootKey,
    ManagerSpec,
    ManagerState,
)
from .provisioner import RootKeyProvisioner
from .rotation import KeyRotationController

logger = logging.getLogger(__name__)

WRAPPED_KEY_BEFORE_WRAPPING_KEY = (
    "wrapped_key must not be set before public_wrapping_key exists: remove wrapped_key "
    "from customer_provided_root_key, apply, then wrap the key material with the "
    "published public_wrapping_key"
)

# Safety bound on key listing pagination
MAX_LIST_PAGES = 1000


# =============================================================================
# Observed root key
# =============================================================================


class ObservedKind(str, Enum):
    """Lifecycle stage of the observed managed root key."""

    NOT_FOUND = "not-found"
    PRE_ACTIVATION = "pre-activation"
    ACTIVE = "active"


@dataclass(frozen=True)
class ObservedRootKey:
    """Tagged result of the managed root key lookup.

    ``key`` is set exactly when ``kind`` is not NOT_FOUND.
    """

    kind: ObservedKind
    key: EncryptionKey | None = None

    def __post_init__(self) -> None:
        if (self.kind == ObservedKind.NOT_FOUND) != (self.key is None):
            raise ValueError(f"ObservedRootKey({self.kind.value}) key mismatch")

    @property
    def key_id(self) -> str | None:
        return self.key.key_id if self.key is not None else None


NOT_FOUND = ObservedRootKey(ObservedKind.NOT_FOUND)


def select_managed_root_key(keys: list[EncryptionKey]) -> ObservedRootKey:
    """Pick the managed root key, preferring pre-activation over active.

    A key in pre-activation is the newer lifecycle stage of the same
    logical managed key, so it always wins. When several active root keys
    exist (for example after an interrupted rotation) the most recently
    updated one is chosen and a warning is logged.
    """
    pending = [key for key in keys if key.is_root_key_in(KeyState.PRE_ACTIVATION)]
    if pending:
        if len(pending) > 1:
            logger.warning(
                "Multiple customer-provided root keys in pre-activation",
                extra={"key_ids": [key.key_id for key in pending]},
            )
        return ObservedRootKey(ObservedKind.PRE_ACTIVATION, _most_recent(pending))

    active = [key for key in keys if key.is_root_key_in(KeyState.ACTIVE)]
    if active:
        if len(active) > 1:
            logger.warning(
                "Multiple active customer-provided root keys, using the most recently updated",
                extra={"key_ids": [key.key_id for key in active]},
            )
        return ObservedRootKey(ObservedKind.ACTIVE, _most_recent(active))

    return NOT_FOUND


def _most_recent(keys: list[EncryptionKey]) -> EncryptionKey:
    # Stable for keys without timestamps: the first listed wins.
    best = keys[0]
    for key in keys[1:]:
        if key.updated_at is not None and (
            best.updated_at is None or key.updated_at > best.updated_at
        ):
            best = key
    return best


# =============================================================================
# Planning
# =============================================================================


class ActionKind(str, Enum):
    """Root key workflow selected for a pass."""

    NOOP = "noop"
    CREATE = "create"
    RESUME = "resume"
    IMPORT = "import"
    REMOVE = "remove"


@dataclass(frozen=True)
class RootKeyAction:
    """One planned root key action."""

    kind: ActionKind
    key_id: str | None = None
    wrapped_key: str | None = field(default=None, repr=False)

    @property
    def mutating(self) -> bool:
        return self.kind != ActionKind.NOOP


NOOP = RootKeyAction(ActionKind.NOOP)


def validate(declared: ManagerSpec, prior_root: ManagedRootKey | None) -> None:
    """Reject a wrapped key declared before any wrapping key was published.

    Raises:
        ConfigurationError: If wrapped_key is declared too early.
    """
    wrapped_key = declared.wrapped_key
    if wrapped_key is None:
        return
    if prior_root is None or not prior_root.has_key:
        raise ConfigurationError(WRAPPED_KEY_BEFORE_WRAPPING_KEY)
    if prior_root.wrapped_key is None and not prior_root.has_wrapping_key:
        raise ConfigurationError(WRAPPED_KEY_BEFORE_WRAPPING_KEY)


def plan(
    declared: ManagerSpec,
    prior_root: ManagedRootKey | None,
    observed: ObservedRootKey,
) -> RootKeyAction:
    """Select the root key action for this pass.

    | declared | prior key | observed                    | action  |
    |----------|-----------|-----------------------------|---------|
    | no       | no        | any                         | NOOP    |
    | no       | yes       | any                         | REMOVE  |
    | yes      | no        | pre-activation              | RESUME  |
    | yes      | no        | otherwise                   | CREATE  |
    | yes      | yes, no wrapping key | same key pending | RESUME  |
    | yes      | yes, no wrapped_key  | same key pending,
                 declared wrapped_key                      | IMPORT  |
    | yes      | yes       | anything else               | NOOP    |

    A recorded key that is no longer observed is left alone. Removing the
    block tears it down, and declaring the block again creates a new key.
    """
    block = declared.customer_provided_root_key
    prior_id = prior_root.key_id if prior_root is not None and prior_root.has_key else None

    if block is None:
        if prior_id is None:
            return NOOP
        return RootKeyAction(ActionKind.REMOVE, key_id=prior_id)

    if prior_id is None or prior_root is None:
        if observed.kind == ObservedKind.PRE_ACTIVATION:
            # A previous pass created the key but failed before recording it.
            return RootKeyAction(ActionKind.RESUME, key_id=observed.key_id)
        return RootKeyAction(ActionKind.CREATE)

    if observed.kind == ObservedKind.PRE_ACTIVATION and observed.key_id == prior_id:
        if not prior_root.has_wrapping_key:
            return RootKeyAction(ActionKind.RESUME, key_id=prior_id)
        if prior_root.wrapped_key is None and block.wrapped_key is not None:
            return RootKeyAction(ActionKind.IMPORT, key_id=prior_id, wrapped_key=block.wrapped_key)

    return NOOP


# =============================================================================
# Reconciliation
# =============================================================================


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    state: ManagerState
    action: RootKeyAction = NOOP
    rotated: bool = False
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return self.rotated or (self.action.mutating and not self.dry_run)


class StateReconciler:
    """Runs rotation and the planned root key action, then reads back."""

    def __init__(
        self,
        keystore: KeyStore,
        tenant: str,
        provisioner: RootKeyProvisioner,
        rotation: KeyRotationController,
        *,
        dry_run: bool = False,
    ) -> None:
        self._keystore = keystore
        self._tenant = tenant
        self._provisioner = provisioner
        self._rotation = rotation
        self._dry_run = dry_run

    async def list_all_keys(self) -> list[EncryptionKey]:
        """List every key on the tenant, following pagination."""
        keys: list[EncryptionKey] = []
        for page in range(MAX_LIST_PAGES):
            result = await call_keystore(self._keystore.list_keys, page, LIST_KEYS_PAGE_SIZE)
            keys.extend(result.keys)
            if not result.has_next or not result.keys:
                break
        else:
            logger.warning(
                "Key listing truncated",
                extra={"tenant": self._tenant, "max_pages": MAX_LIST_PAGES},
            )
        return keys

    async def reconcile(self, declared: ManagerSpec, prior: ManagerState | None) -> PassResult:
        """Run one create/update pass.

        Args:
            declared: Validated declared configuration.
            prior: State persisted by the last successful pass, if any.

        Returns:
            PassResult with the new state to persist.

        Raises:
            ConfigurationError: If the declaration is invalid for the prior
                state. Raised before any remote call.
            PollTimeoutError: If a workflow does not converge in budget.
            AzureError: On remote failures, unchanged.
        """
        prior = prior or ManagerState(tenant=self._tenant)
        validate(declared, prior.managed_root_key)

        outcome = await self._rotation.apply(
            prior.key_rotation_id, declared.key_rotation_id, dry_run=self._dry_run
        )

        keys = await self.list_all_keys()
        observed = select_managed_root_key(keys)
        action = plan(declared, prior.managed_root_key, observed)
        if (
            declared.customer_provided_root_key is not None
            and prior.root_key_id is not None
            and observed.kind == ObservedKind.NOT_FOUND
        ):
            logger.warning(
                "Managed root key no longer observed, remove the block to tear it down",
                extra={"tenant": self._tenant, "key_id": prior.root_key_id},
            )

        state = prior.model_copy(deep=True)
        state.key_rotation_id = outcome.baseline

        if self._dry_run:
            if action.mutating:
                logger.info(
                    f"Dry run: would {action.kind.value} root key",
                    extra={"tenant": self._tenant, "key_id": action.key_id},
                )
        else:
            state.managed_root_key = await self._apply(action, declared, prior, observed)

        if action.mutating and not self._dry_run:
            state = await self.read(state)
        else:
            state = await self.read(state, keys)

        logger.info(
            "Root key reconciled",
            extra={
                "tenant": self._tenant,
                "action": action.kind.value,
                "rotated": outcome.rotated,
                "dry_run": self._dry_run,
                "key_id": state.root_key_id,
            },
        )
        return PassResult(
            state=state, action=action, rotated=outcome.rotated, dry_run=self._dry_run
        )

    async def _apply(
        self,
        action: RootKeyAction,
        declared: ManagerSpec,
        prior: ManagerState,
        observed: ObservedRootKey,
    ) -> ManagedRootKey | None:
        if declared.customer_provided_root_key is None:
            if action.kind == ActionKind.REMOVE:
                assert action.key_id is not None
                await self._provisioner.remove(action.key_id)
            return None

        current = prior.managed_root_key
        # wrapped_key is recorded only by a successful import.
        if action.kind == ActionKind.CREATE:
            key, wrapping_key = await self._provisioner.create_root_key()
            root = flatten_root_key(None, root_key=key, wrapping_key=wrapping_key)
        elif action.kind == ActionKind.RESUME:
            assert action.key_id is not None
            logger.info(
                "Resuming root key provisioning",
                extra={"tenant": self._tenant, "key_id": action.key_id},
            )
            wrapping_key = await self._provisioner.ensure_wrapping_key(action.key_id)
            root = flatten_root_key(current, root_key=observed.key, wrapping_key=wrapping_key)
            root.wrapped_key = None
        elif action.kind == ActionKind.IMPORT:
            assert action.key_id is not None and action.wrapped_key is not None
            await self._provisioner.import_wrapped_key(action.key_id, action.wrapped_key)
            root = flatten_root_key(current, wrapped_key=action.wrapped_key)
        else:
            root = flatten_root_key(current)
        return root

    async def read(
        self, state: ManagerState, keys: list[EncryptionKey] | None = None
    ) -> ManagerState:
        """Republish the key listing and refresh the managed root key snapshot.

        Args:
            state: State to refresh; not modified.
            keys: Listing to use instead of fetching a new one.
        """
        if keys is None:
            keys = await self.list_all_keys()

        refreshed = state.model_copy(deep=True)
        refreshed.encryption_keys = flatten_keys(keys)

        if refreshed.managed_root_key is not None:
            observed = select_managed_root_key(keys)
            if observed.key is not None:
                refreshed.managed_root_key = flatten_root_key(
                    refreshed.managed_root_key, root_key=observed.key
                )
        return refreshed

    async def destroy(self, prior: ManagerState | None) -> bool:
        """Tear down the managed root key when the resource is deleted.

        Returns:
            True if a key was removed (or would be, in dry-run mode).
        """
        key_id = prior.root_key_id if prior is not None else None
        if key_id is None:
            logger.info("No managed root key to destroy", extra={"tenant": self._tenant})
            return False

        if self._dry_run:
            logger.info(
                "Dry run: would remove root key",
                extra={"tenant": self._tenant, "key_id": key_id},
            )
            return True

        await self._provisioner.remove(key_id)
        return True
