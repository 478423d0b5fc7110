"""Operator settings read from the environment.

Invalid configuration is rejected at load time so the operator never
starts a reconciliation pass against a half-configured tenant.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised for invalid settings or an invalid declaration."""

    pass


# Reconcile loop bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

# Polling budgets observed against the key service
DEFAULT_CREATE_POLL_INTERVAL_MS = 100
DEFAULT_CREATE_POLL_ATTEMPTS = 20
DEFAULT_IMPORT_POLL_INTERVAL_MS = 200
DEFAULT_IMPORT_POLL_ATTEMPTS = 10
DEFAULT_DELETE_POLL_INTERVAL_MS = 200
DEFAULT_DELETE_POLL_ATTEMPTS = 10

# Upper bound for a single poll budget (interval * attempts)
MAX_POLL_BUDGET_SECONDS = 600

# Upper bound for one blocking key service call, retries included
KEY_SERVICE_CALL_TIMEOUT_SECONDS = 120

# Security constraints
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file
LIST_KEYS_PAGE_SIZE = 100

# Input validation patterns
VALID_TENANT_DOMAIN_PATTERN = r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"

DEFAULT_SPEC_PATH = "/specs/encryption-key-manager.yaml"
DEFAULT_STATE_DIR = "/state"


@dataclass(frozen=True)
class PollSettings:
    """Interval and attempt budget for one polling loop."""

    interval_seconds: float
    max_attempts: int

    @property
    def budget_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts

    @classmethod
    def from_millis(cls, interval_ms: int, max_attempts: int) -> PollSettings:
        return cls(interval_seconds=interval_ms / 1000, max_attempts=max_attempts)


DEFAULT_CREATE_POLL = PollSettings.from_millis(
    DEFAULT_CREATE_POLL_INTERVAL_MS, DEFAULT_CREATE_POLL_ATTEMPTS
)
DEFAULT_IMPORT_POLL = PollSettings.from_millis(
    DEFAULT_IMPORT_POLL_INTERVAL_MS, DEFAULT_IMPORT_POLL_ATTEMPTS
)
DEFAULT_DELETE_POLL = PollSettings.from_millis(
    DEFAULT_DELETE_POLL_INTERVAL_MS, DEFAULT_DELETE_POLL_ATTEMPTS
)


@dataclass(frozen=True)
class SecurityConfig:
    """Audit settings.

    - enable_audit_logging: Emit a security audit event for every
      destructive key operation (delete, import, rekey).
    """

    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Settings for one tenant's key operator.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Required fields
    tenant_domain: str

    # Authentication: either api_token, or client_id + client_secret
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    api_token: str | None = field(default=None, repr=False)
    audience: str | None = None

    # Paths
    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    create_poll: PollSettings = DEFAULT_CREATE_POLL
    import_poll: PollSettings = DEFAULT_IMPORT_POLL
    delete_poll: PollSettings = DEFAULT_DELETE_POLL

    # Behavior
    dry_run: bool = False

    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.tenant_domain:
            errors.append("AUTH0_DOMAIN is required")
        elif not re.match(VALID_TENANT_DOMAIN_PATTERN, self.tenant_domain.lower()):
            errors.append(f"AUTH0_DOMAIN must be a hostname: {self.tenant_domain}")

        has_client_credentials = bool(self.client_id) and bool(self.client_secret)
        if self.api_token and (self.client_id or self.client_secret):
            errors.append(
                "Set either AUTH0_API_TOKEN or AUTH0_CLIENT_ID/AUTH0_CLIENT_SECRET, not both"
            )
        elif not self.api_token and not has_client_credentials:
            if self.client_id or self.client_secret:
                errors.append("AUTH0_CLIENT_ID and AUTH0_CLIENT_SECRET must be set together")
            else:
                errors.append(
                    "Credentials are required: AUTH0_API_TOKEN or "
                    "AUTH0_CLIENT_ID/AUTH0_CLIENT_SECRET"
                )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        for name, settings in (
            ("KEY_CREATE_POLL", self.create_poll),
            ("KEY_IMPORT_POLL", self.import_poll),
            ("KEY_DELETE_POLL", self.delete_poll),
        ):
            if settings.interval_seconds < 0 or settings.max_attempts < 0:
                errors.append(f"{name} interval and attempts must not be negative")
            elif settings.budget_seconds > MAX_POLL_BUDGET_SECONDS:
                errors.append(
                    f"{name} budget exceeds {MAX_POLL_BUDGET_SECONDS} seconds "
                    f"({settings.budget_seconds:.1f}s)"
                )

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def management_audience(self) -> str:
        """Audience of the Management API for token requests."""
        return self.audience or f"https://{self.tenant_domain}/api/v2/"

    @classmethod
    def from_env(cls) -> Config:
        """Build a Config from environment variables.

        Environment Variables:
            AUTH0_DOMAIN: Tenant domain (e.g. example.eu.auth0.com)
            AUTH0_CLIENT_ID: Client ID for the client-credentials grant
            AUTH0_CLIENT_SECRET: Client secret for the client-credentials grant
            AUTH0_API_TOKEN: Static Management API token (alternative)
            AUTH0_AUDIENCE: Management API audience override
            SPEC_PATH: Declared configuration YAML
            STATE_DIR: Directory for persisted reconciliation state
            RECONCILE_INTERVAL: Seconds between passes (default: 300)
            DRY_RUN: If "true", plan and log only (default: false)
            KEY_{CREATE,IMPORT,DELETE}_POLL_INTERVAL_MS: Poll interval
            KEY_{CREATE,IMPORT,DELETE}_POLL_ATTEMPTS: Poll attempt budget
            ENABLE_AUDIT_LOGGING: Emit security audit events (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_poll(prefix: str, interval_ms: int, attempts: int) -> PollSettings:
            return PollSettings.from_millis(
                get_int(f"{prefix}_INTERVAL_MS", interval_ms),
                get_int(f"{prefix}_ATTEMPTS", attempts),
            )

        return cls(
            tenant_domain=os.environ.get("AUTH0_DOMAIN", ""),
            client_id=os.environ.get("AUTH0_CLIENT_ID") or None,
            client_secret=os.environ.get("AUTH0_CLIENT_SECRET") or None,
            api_token=os.environ.get("AUTH0_API_TOKEN") or None,
            audience=os.environ.get("AUTH0_AUDIENCE") or None,
            spec_path=Path(os.environ.get("SPEC_PATH", DEFAULT_SPEC_PATH)),
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            create_poll=get_poll(
                "KEY_CREATE_POLL", DEFAULT_CREATE_POLL_INTERVAL_MS, DEFAULT_CREATE_POLL_ATTEMPTS
            ),
            import_poll=get_poll(
                "KEY_IMPORT_POLL", DEFAULT_IMPORT_POLL_INTERVAL_MS, DEFAULT_IMPORT_POLL_ATTEMPTS
            ),
            delete_poll=get_poll(
                "KEY_DELETE_POLL", DEFAULT_DELETE_POLL_INTERVAL_MS, DEFAULT_DELETE_POLL_ATTEMPTS
            ),
            dry_run=get_bool("DRY_RUN", False),
            security=SecurityConfig(
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
