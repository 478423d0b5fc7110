"""Declared configuration loading with validation.

SECURITY: The file size is checked before reading, and the YAML is parsed
with safe_load only. Validation happens here at the boundary so nothing
downstream sees an unvalidated declaration.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ManagerSpec

logger = logging.getLogger(__name__)

# kind accepted for the Kubernetes-style wrapper
SPEC_KIND = "EncryptionKeyManager"

ROOT_KEY_FIELDS = ("customerProvidedRootKey", "customer_provided_root_key")


class SpecLoadError(Exception):
    """Raised when the declared configuration cannot be read or is invalid."""

    pass


def load_spec(spec_path: Path) -> ManagerSpec:
    """Load and validate the encryption key manager declaration.

    Both a flat document and a Kubernetes-style wrapper (apiVersion, kind,
    metadata, spec) are accepted. An empty file declares nothing, which
    means no managed root key and no rotation.

    Args:
        spec_path: Path of the YAML file.

    Returns:
        Validated ManagerSpec.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Declared configuration not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Declared configuration {spec_path} exceeds maximum size of "
            f"{MAX_SPEC_FILE_SIZE_BYTES} bytes"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind")
        if kind is not None and kind != SPEC_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {spec_path}, expected {SPEC_KIND}")
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    # YAML renders an empty block as null; presence alone declares the key.
    for name in ROOT_KEY_FIELDS:
        if name in spec_data and spec_data[name] is None:
            spec_data = {**spec_data, name: {}}

    try:
        spec = ManagerSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info(
        "Loaded encryption key manager spec from %s",
        spec_path,
        extra={
            "root_key_declared": spec.customer_provided_root_key is not None,
            "wrapped_key_declared": spec.wrapped_key is not None,
        },
    )
    return spec
