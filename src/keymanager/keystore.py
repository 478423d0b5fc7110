"""Key service client for the Management API encryption key endpoints.

The rest of the operator only depends on the KeyStore protocol, so tests
can substitute an in-memory implementation. KeyStoreClient is the real
adapter, built on an azure-core pipeline (retry, auth, logging policies)
with status codes mapped onto azure.core.exceptions.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceResponseError,
    map_error,
)
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import KEY_SERVICE_CALL_TIMEOUT_SECONDS
from .credentials import USER_AGENT
from .models import EncryptionKey, EncryptionKeyPage, KeyType, WrappingKey

logger = logging.getLogger(__name__)

ENCRYPTION_KEYS_PATH = "/api/v2/keys/encryption"

ERROR_MAP: dict[int, type[HttpResponseError]] = {
    401: ClientAuthenticationError,
    404: ResourceNotFoundError,
    409: ResourceExistsError,
}

T = TypeVar("T")


async def call_keystore(
    operation: Callable[..., T],
    *args: Any,
    timeout: float = KEY_SERVICE_CALL_TIMEOUT_SECONDS,
) -> T:
    """Run a blocking key service call on the default executor.

    Args:
        operation: Bound KeyStore method.
        *args: Positional arguments for the call.
        timeout: Seconds to wait before giving up on the call.

    Raises:
        ServiceResponseError: If the call does not finish within timeout.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(operation, *args)),
            timeout=timeout,
        )
    except TimeoutError as e:
        name = getattr(operation, "__name__", "call")
        raise ServiceResponseError(
            f"Key service call {name} timed out after {timeout}s"
        ) from e


class KeyStore(Protocol):
    """Remote key service operations used by the operator."""

    def create_key(self, key_type: KeyType) -> EncryptionKey: ...

    def read_key(self, key_id: str) -> EncryptionKey: ...

    def list_keys(self, page: int, per_page: int) -> EncryptionKeyPage: ...

    def create_wrapping_key(self, key_id: str) -> WrappingKey: ...

    def import_wrapped_key(self, key_id: str, wrapped_key: str) -> EncryptionKey: ...

    def delete_key(self, key_id: str) -> None: ...

    def rekey_all(self) -> None: ...


class KeyStoreClient:
    """KeyStore backed by the Management API v2."""

    def __init__(
        self,
        tenant_domain: str,
        credential: TokenCredential,
        audience: str,
        **kwargs: Any,
    ) -> None:
        """Initialize the client.

        Args:
            tenant_domain: Tenant hostname, e.g. example.eu.auth0.com.
            credential: Credential issuing Management API tokens.
            audience: Token audience (passed as the scope).
            **kwargs: Forwarded to PipelineClient (e.g. transport).
        """
        self._tenant_domain = tenant_domain
        self._client: PipelineClient = PipelineClient(
            base_url=f"https://{tenant_domain}",
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, audience),
                HttpLoggingPolicy(),
            ],
            **kwargs,
        )

    def _key_path(self, key_id: str, *suffix: str) -> str:
        if not key_id:
            raise ValueError("key_id cannot be empty")
        return "/".join([ENCRYPTION_KEYS_PATH, quote(key_id, safe=""), *suffix])

    def _send(self, request: HttpRequest, expected: tuple[int, ...]) -> HttpResponse:
        response = self._client.send_request(request)
        if response.status_code not in expected:
            map_error(status_code=response.status_code, response=response, error_map=ERROR_MAP)
            raise HttpResponseError(response=response)
        return response

    def create_key(self, key_type: KeyType) -> EncryptionKey:
        request = HttpRequest("POST", ENCRYPTION_KEYS_PATH, json={"type": key_type.value})
        response = self._send(request, (200, 201))
        key = EncryptionKey.model_validate(response.json())
        logger.info("Created encryption key", extra={"key_id": key.key_id, "type": key_type.value})
        return key

    def read_key(self, key_id: str) -> EncryptionKey:
        response = self._send(HttpRequest("GET", self._key_path(key_id)), (200,))
        return EncryptionKey.model_validate(response.json())

    def list_keys(self, page: int, per_page: int) -> EncryptionKeyPage:
        request = HttpRequest(
            "GET",
            ENCRYPTION_KEYS_PATH,
            params={"page": page, "per_page": per_page, "include_totals": "true"},
        )
        response = self._send(request, (200,))
        payload = response.json()
        # Without totals the endpoint returns a bare array.
        if isinstance(payload, list):
            return EncryptionKeyPage(keys=payload, start=0, limit=len(payload), total=len(payload))
        return EncryptionKeyPage.model_validate(payload)

    def create_wrapping_key(self, key_id: str) -> WrappingKey:
        request = HttpRequest("POST", self._key_path(key_id, "wrapping-key"))
        response = self._send(request, (200, 201))
        return WrappingKey.model_validate(response.json())

    def import_wrapped_key(self, key_id: str, wrapped_key: str) -> EncryptionKey:
        request = HttpRequest("POST", self._key_path(key_id), json={"wrapped_key": wrapped_key})
        response = self._send(request, (200, 201))
        return EncryptionKey.model_validate(response.json())

    def delete_key(self, key_id: str) -> None:
        self._send(HttpRequest("DELETE", self._key_path(key_id)), (200, 202, 204))

    def rekey_all(self) -> None:
        self._send(HttpRequest("POST", f"{ENCRYPTION_KEYS_PATH}/rekey"), (200, 201, 204))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> KeyStoreClient:
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self.close()
