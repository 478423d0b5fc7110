"""Management API credentials and security audit logging.

SECURITY INVARIANTS:
1. Client secrets and API tokens are never logged, only redacted forms
2. Tokens are held in memory only and refreshed before they expire
3. Every destructive key operation emits a structured audit event
"""

from __future__ import annotations

import logging
import time
from typing import Any

from azure.core import PipelineClient
from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import ClientAuthenticationError, HttpResponseError
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest

from .config import Config

logger = logging.getLogger(__name__)

USER_AGENT = "tenant-key-operator/0.1.0"

# Refresh tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 300

# Static tokens carry no expiry; treat them as valid for a day
STATIC_TOKEN_LIFETIME_SECONDS = 86400


def redact(value: str | None) -> str:
    """Redact a secret for logging, keeping a short prefix."""
    if not value:
        return ""
    if len(value) <= 8:
        return "***"
    return value[:4] + "..."


class StaticTokenCredential:
    """TokenCredential for a pre-issued Management API token."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("token cannot be empty")
        self._token = token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return AccessToken(self._token, int(time.time()) + STATIC_TOKEN_LIFETIME_SECONDS)


class ClientCredential:
    """TokenCredential using the OAuth2 client-credentials grant.

    Tokens are requested from ``https://<domain>/oauth/token`` for the
    Management API audience and cached until shortly before expiry.
    """

    def __init__(
        self,
        tenant_domain: str,
        client_id: str,
        client_secret: str,
        audience: str,
        **kwargs: Any,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._audience = audience
        self._token: AccessToken | None = None
        self._client: PipelineClient = PipelineClient(
            base_url=f"https://{tenant_domain}",
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(),
            ],
            **kwargs,
        )

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        now = int(time.time())
        if self._token is not None and self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS > now:
            return self._token

        request = HttpRequest(
            "POST",
            "/oauth/token",
            json={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "audience": self._audience,
            },
        )
        response = self._client.send_request(request)
        if response.status_code in (401, 403):
            raise ClientAuthenticationError(
                message="Client credentials were rejected", response=response
            )
        if response.status_code != 200:
            raise HttpResponseError(response=response)

        payload = response.json()
        self._token = AccessToken(payload["access_token"], now + int(payload["expires_in"]))
        logger.info(
            "Obtained Management API token",
            extra={"client_id": redact(self._client_id), "expires_in": payload["expires_in"]},
        )
        return self._token


def get_management_credential(config: Config) -> TokenCredential:
    """Build the credential selected by the configuration.

    Config validation guarantees exactly one authentication method.
    """
    if config.api_token:
        logger.info("Using static Management API token")
        return StaticTokenCredential(config.api_token)

    assert config.client_id is not None and config.client_secret is not None
    logger.info(
        "Using client credentials",
        extra={"client_id": redact(config.client_id), "tenant": config.tenant_domain},
    )
    return ClientCredential(
        tenant_domain=config.tenant_domain,
        client_id=config.client_id,
        client_secret=config.client_secret,
        audience=config.management_audience,
    )


def log_security_audit_event(
    event_type: str,
    tenant: str,
    target_key: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of security event (key_delete, key_import, rekey).
        tenant: Tenant domain the event applies to.
        target_key: Key ID being acted on, if any.
        action: Action being performed.
        result: Result of the action (requested, success, failure).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "tenant": tenant,
            "target_key": target_key,
            "action": action,
            "result": result,
        },
    )
