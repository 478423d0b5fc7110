"""Tests for the keyop CLI."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from keystore_mock import MockKeyStore

from keymanager.cli import cli
from keymanager.config import Config
from keymanager.models import KeyState, ManagedRootKey, ManagerState
from keymanager.reconciler import Reconciler
from keymanager.store import StateStore

TENANT = "example.eu.auth0.com"

WriteSpec = Callable[[dict[str, Any] | None], Path]


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def env(spec_path: Path, state_dir: Path) -> dict[str, str]:
    """Environment for a tenant with a static token and no poll delay."""
    values = {
        "AUTH0_DOMAIN": TENANT,
        "AUTH0_API_TOKEN": "test-token",
        "SPEC_PATH": str(spec_path),
        "STATE_DIR": str(state_dir),
    }
    for operation in ("CREATE", "IMPORT", "DELETE"):
        values[f"KEY_{operation}_POLL_INTERVAL_MS"] = "0"
        values[f"KEY_{operation}_POLL_ATTEMPTS"] = "5"
    return values


@pytest.fixture
def runner(env: dict[str, str]) -> CliRunner:
    return CliRunner(env=env)


@pytest.fixture
def mock_reconciler(keystore: MockKeyStore) -> Iterator[list[Config]]:
    """Route every reconciler the CLI builds to the mock key service.

    Yields the configs the CLI built, in order.
    """
    configs: list[Config] = []

    def make(config: Config) -> Reconciler:
        configs.append(config)
        return Reconciler(config, keystore=keystore)

    with patch("keymanager.cli.make_reconciler", side_effect=make):
        yield configs


class TestApply:
    """Tests for the apply command."""

    def test_apply_creates_root_key(
        self,
        runner: CliRunner,
        write_spec: WriteSpec,
        mock_reconciler: list[Config],
        keystore: MockKeyStore,
    ) -> None:
        """Test that apply prints the published wrapping key."""
        write_spec({"customerProvidedRootKey": {}})

        result = runner.invoke(cli, ["apply"])

        assert result.exit_code == 0, result.output
        assert "Root key action: create" in result.output
        assert "BEGIN PUBLIC KEY" in result.output
        assert "CKM_RSA_AES_KEY_WRAP" in result.output
        assert keystore.count("create_key") == 1

    def test_apply_dry_run_flag(
        self,
        runner: CliRunner,
        write_spec: WriteSpec,
        mock_reconciler: list[Config],
        keystore: MockKeyStore,
        state_dir: Path,
    ) -> None:
        write_spec({"customerProvidedRootKey": {}})

        result = runner.invoke(cli, ["apply", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "[dry run] Root key action: create" in result.output
        assert mock_reconciler[0].dry_run is True
        assert keystore.mutating_call_count == 0
        assert StateStore(state_dir).load(TENANT) is None

    def test_spec_option_overrides_environment(
        self,
        runner: CliRunner,
        tmp_path: Path,
        mock_reconciler: list[Config],
    ) -> None:
        other = tmp_path / "other.yaml"
        other.write_text("keyRotationId: rotation-1\n")

        result = runner.invoke(cli, ["apply", "--spec", str(other)])

        assert result.exit_code == 0, result.output
        assert mock_reconciler[0].spec_path == other
        assert "Rotated all encryption keys" in result.output

    def test_apply_failure_exits_nonzero(
        self,
        runner: CliRunner,
        write_spec: WriteSpec,
        mock_reconciler: list[Config],
        keystore: MockKeyStore,
    ) -> None:
        """Test that an early wrapped key is reported as a failure."""
        write_spec({"customerProvidedRootKey": {"wrappedKey": "d3JhcHBlZA=="}})

        result = runner.invoke(cli, ["apply"])

        assert result.exit_code == 1
        assert "reconcile_once failed" in result.output
        assert "public_wrapping_key" in result.output
        assert keystore.calls == []

    def test_configuration_error_exits_nonzero(
        self, env: dict[str, str], mock_reconciler: list[Config]
    ) -> None:
        """Test that missing credentials fail before any reconciler is built."""
        env = {**env, "AUTH0_API_TOKEN": ""}

        result = CliRunner(env=env).invoke(cli, ["apply"])

        assert result.exit_code == 1
        assert "Credentials are required" in result.output
        assert mock_reconciler == []


class TestRefreshAndDestroy:
    """Tests for the refresh and destroy commands."""

    def test_refresh_reports_key_count(
        self,
        runner: CliRunner,
        mock_reconciler: list[Config],
        state_dir: Path,
    ) -> None:
        result = runner.invoke(cli, ["refresh"])

        assert result.exit_code == 0, result.output
        assert f"Refreshed 2 encryption keys for {TENANT}" in result.output
        state = StateStore(state_dir).load(TENANT)
        assert state is not None
        assert len(state.encryption_keys) == 2

    def test_destroy_requires_confirmation(
        self, runner: CliRunner, mock_reconciler: list[Config]
    ) -> None:
        result = runner.invoke(cli, ["destroy"], input="n\n")

        assert result.exit_code == 1
        assert mock_reconciler == []

    def test_destroy_removes_key(
        self,
        runner: CliRunner,
        write_spec: WriteSpec,
        mock_reconciler: list[Config],
        keystore: MockKeyStore,
        state_dir: Path,
    ) -> None:
        write_spec({"customerProvidedRootKey": {}})
        assert runner.invoke(cli, ["apply"]).exit_code == 0
        state = StateStore(state_dir).load(TENANT)
        assert state is not None and state.root_key_id is not None

        result = runner.invoke(cli, ["destroy", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Root key action: remove" in result.output
        assert keystore.get(state.root_key_id).state == KeyState.DESTROYED
        assert StateStore(state_dir).load(TENANT) is None


class TestShow:
    """Tests for the show command."""

    @pytest.fixture
    def saved_state(self, state_dir: Path) -> ManagerState:
        state = ManagerState(
            tenant=TENANT,
            key_rotation_id="rotation-1",
            managed_root_key=ManagedRootKey(
                key_id="kid-0003",
                type="customer-provided-root-key",
                state="active",
                wrapped_key="super-secret-wrapped-material",
            ),
        )
        StateStore(state_dir).save(state)
        return state

    def test_show_redacts_wrapped_key(self, runner: CliRunner, saved_state: ManagerState) -> None:
        result = runner.invoke(cli, ["show"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["tenant"] == TENANT
        assert data["managed_root_key"]["key_id"] == "kid-0003"
        assert data["managed_root_key"]["wrapped_key"] == "supe..."
        assert "super-secret-wrapped-material" not in result.output

    def test_show_sensitive(self, runner: CliRunner, saved_state: ManagerState) -> None:
        result = runner.invoke(cli, ["show", "--show-sensitive"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["managed_root_key"]["wrapped_key"] == "super-secret-wrapped-material"

    def test_show_without_state(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["show"])

        assert result.exit_code == 1
        assert "No persisted state" in result.output


class TestVersion:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output
