"""Key service mock for integration testing.

Provides an in-memory implementation of the KeyStore protocol so the
provisioner, reconciler and CLI can be tested without network access.

Key Features:
- Server-driven state transitions after a configurable number of reads
- Error injection per operation
- Call recording, including a count of mutating calls

Usage:
    from keystore_mock import MockKeyStore

    keystore = MockKeyStore(active_after_reads=2)
    keystore.seed_tenant()
"""

from .context import MockKeyStoreContext, mock_keystore_context
from .credential import MockTokenCredential
from .http import FakeResponse, RecordingSender
from .keys import MUTATING_OPERATIONS, WRAPPING_ALGORITHM, MockKey, MockKeyStore

__all__ = [
    "FakeResponse",
    "MUTATING_OPERATIONS",
    "WRAPPING_ALGORITHM",
    "MockKey",
    "MockKeyStore",
    "MockKeyStoreContext",
    "MockTokenCredential",
    "RecordingSender",
    "mock_keystore_context",
]
