"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from keymanager.models import (
    EncryptionKey,
    EncryptionKeyPage,
    KeyState,
    KeyType,
    ManagedRootKey,
    ManagerSpec,
    ManagerState,
)


class TestEncryptionKey:
    """Tests for parsing key service payloads."""

    def test_parses_wire_names(self) -> None:
        """Test parsing a key as the Management API returns it."""
        data = {
            "kid": "kid-1",
            "type": "customer-provided-root-key",
            "state": "pre-activation",
            "parent_kid": "kid-0",
            "created_at": "2024-01-01T00:00:00.000Z",
            "updated_at": "2024-01-02T00:00:00.000Z",
            "public_key": "ignored",
        }
        key = EncryptionKey.model_validate(data)

        assert key.key_id == "kid-1"
        assert key.type == KeyType.CUSTOMER_PROVIDED_ROOT_KEY
        assert key.state == KeyState.PRE_ACTIVATION
        assert key.parent_key_id == "kid-0"
        assert key.updated_at is not None and key.updated_at.day == 2

    def test_unknown_state_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EncryptionKey.model_validate(
                {"kid": "kid-1", "type": "tenant-master-key", "state": "x"}
            )

    def test_is_root_key_in(self) -> None:
        master = EncryptionKey(kid="kid-1", type=KeyType.TENANT_MASTER_KEY, state=KeyState.ACTIVE)

        assert master.is_root_key_in(KeyState.ACTIVE) is False


class TestEncryptionKeyPage:
    """Tests for listing pagination."""

    def test_has_next(self) -> None:
        assert EncryptionKeyPage(start=0, limit=100, total=250).has_next is True
        assert EncryptionKeyPage(start=200, limit=100, total=250).has_next is False

    def test_empty_page(self) -> None:
        assert EncryptionKeyPage.model_validate({}).has_next is False


class TestManagerSpec:
    """Tests for ManagerSpec model."""

    def test_valid_spec(self) -> None:
        data = {
            "keyRotationId": "3f6c8a2e-rotation",
            "customerProvidedRootKey": {"wrappedKey": "d3JhcHBlZA=="},
        }
        spec = ManagerSpec.model_validate(data)

        assert spec.key_rotation_id == "3f6c8a2e-rotation"
        assert spec.wrapped_key == "d3JhcHBlZA=="

    def test_empty_spec(self) -> None:
        """Test that an empty document declares nothing."""
        spec = ManagerSpec.model_validate({})

        assert spec.key_rotation_id is None
        assert spec.customer_provided_root_key is None
        assert spec.wrapped_key is None

    def test_blank_wrapped_key_is_unset(self) -> None:
        spec = ManagerSpec.model_validate({"customerProvidedRootKey": {"wrappedKey": "  "}})

        assert spec.customer_provided_root_key is not None
        assert spec.wrapped_key is None

    def test_unknown_field_rejected(self) -> None:
        """Test that typos in the declaration fail validation."""
        with pytest.raises(ValidationError) as exc_info:
            ManagerSpec.model_validate({"keyRotationID": "x"})

        assert "keyRotationID" in str(exc_info.value)

    def test_snake_case_names_accepted(self) -> None:
        spec = ManagerSpec.model_validate({"customer_provided_root_key": {"wrapped_key": "w"}})

        assert spec.wrapped_key == "w"


class TestManagerState:
    """Tests for persisted state."""

    def test_root_key_id(self) -> None:
        assert ManagerState(tenant="t").root_key_id is None
        empty = ManagerState(tenant="t", managed_root_key=ManagedRootKey())
        assert empty.root_key_id is None
        state = ManagerState(tenant="t", managed_root_key=ManagedRootKey(key_id="kid-1"))
        assert state.root_key_id == "kid-1"

    def test_json_round_trip(self) -> None:
        state = ManagerState(
            tenant="example.eu.auth0.com",
            key_rotation_id="rotation-1",
            managed_root_key=ManagedRootKey(key_id="kid-1", public_wrapping_key="pem"),
        )

        assert ManagerState.model_validate_json(state.model_dump_json()) == state
