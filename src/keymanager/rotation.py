"""Tenant-wide key rotation gated by an operator-chosen token.

Changing ``key_rotation_id`` in the declared configuration triggers one
rekey of every key on the tenant. The rekey call has no observable
success signal beyond not failing; its effects only show up in the next
key listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .credentials import log_security_audit_event
from .keystore import KeyStore, call_keystore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationOutcome:
    """Result of evaluating the rotation token."""

    rotated: bool
    baseline: str | None


def rotation_required(previous: str | None, new: str | None) -> bool:
    """True when new is a non-empty token different from previous."""
    if not new:
        return False
    return new != previous


class KeyRotationController:
    """Invokes rekey-all whenever the rotation token changes."""

    def __init__(self, keystore: KeyStore, tenant: str, *, audit_logging: bool = True) -> None:
        self._keystore = keystore
        self._tenant = tenant
        self._audit_logging = audit_logging

    async def apply(
        self,
        previous: str | None,
        new: str | None,
        *,
        dry_run: bool = False,
    ) -> RotationOutcome:
        """Rekey the tenant if the token changed.

        The returned baseline mirrors the declared value so an unchanged
        declaration never triggers again. In dry-run mode the prior
        baseline is kept so the rotation stays pending.

        Raises:
            AzureError: If the rekey call fails. The baseline is not
                advanced in that case.
        """
        if not rotation_required(previous, new):
            return RotationOutcome(rotated=False, baseline=new)

        if dry_run:
            logger.info(
                "Dry run: would rotate all encryption keys",
                extra={"tenant": self._tenant, "key_rotation_id": new},
            )
            return RotationOutcome(rotated=False, baseline=previous)

        await call_keystore(self._keystore.rekey_all)
        logger.info(
            "Rotated all encryption keys",
            extra={"tenant": self._tenant, "key_rotation_id": new},
        )
        if self._audit_logging:
            log_security_audit_event(
                "rekey", tenant=self._tenant, action="rekey", result="success"
            )
        return RotationOutcome(rotated=True, baseline=new)
