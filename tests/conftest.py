"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for keystore_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from keymanager.config import Config, PollSettings  # noqa: E402
from keystore_mock import MockKeyStore  # noqa: E402

TENANT = "example.eu.auth0.com"

# No waiting between polls in tests
FAST_POLL = PollSettings(interval_seconds=0, max_attempts=5)


@pytest.fixture
def tenant() -> str:
    return TENANT


@pytest.fixture
def keystore() -> MockKeyStore:
    """Mock key service holding the default tenant keys."""
    store = MockKeyStore()
    store.seed_tenant()
    return store


@pytest.fixture
def spec_path(tmp_path: Path) -> Path:
    return tmp_path / "encryption-key-manager.yaml"


@pytest.fixture
def write_spec(spec_path: Path) -> Callable[..., Path]:
    """Write the declared configuration file.

    Pass a dict for the flat layout; None writes an empty document.
    """

    def write(data: dict[str, Any] | None) -> Path:
        spec_path.write_text(yaml.safe_dump(data) if data is not None else "")
        return spec_path

    return write


@pytest.fixture
def make_config(tmp_path: Path, spec_path: Path) -> Callable[..., Config]:
    """Build a Config with fast polling and temporary paths."""

    def make(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "tenant_domain": TENANT,
            "api_token": "test-token",
            "spec_path": spec_path,
            "state_dir": tmp_path / "state",
            "reconcile_interval_seconds": 60,
            "create_poll": FAST_POLL,
            "import_poll": FAST_POLL,
            "delete_poll": FAST_POLL,
        }
        values.update(overrides)
        return Config(**values)

    return make
