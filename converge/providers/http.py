"""
REST control-plane client.

Talks to a control plane that exposes resources by stable identifier:

    POST   /v1/resources                       create   -> 201 {"outputs": {...}}
    GET    /v1/resources/{identifier}          read     -> 200 snapshot | 404
    PUT    /v1/resources/{identifier}          update   -> 200 {"outputs": {...}}
    DELETE /v1/resources/{identifier}          destroy  -> 204 | 404
    POST   /v1/resources/{identifier}/redeploy redeploy -> 202 {"operation_id": ...}
    POST   /v1/secrets/{store}/grants          grant    -> 200/201/204 | 409

Status mapping:
    - 409 on create: the resource already exists, it is adopted
    - 404 on destroy: already gone, success
    - 202 on redeploy: rollout started (the only confirmation the release
      trigger accepts)
    - 429 and 5xx, timeouts and network errors: retryable ProviderError
    - other 4xx: non-retryable ProviderError

Retries are not done here. The engine and the release watcher wrap calls
with a RetryPolicy and look at `ProviderError.retryable`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from converge.errors import AccessDenied, ProviderError, RateLimitError, SecretNotFound
from converge.resources import ResourceKind

from .base import ProviderSnapshot, RedeployReceipt

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class HttpClientConfig:
    """Configuration for an HTTP collaborator."""

    base_url: str = ""
    api_token: str | None = None
    timeout: float = 30.0

    # Observability
    log_requests: bool = False
    log_responses: bool = False


# =============================================================================
# Base Client
# =============================================================================


class HttpCollaborator:
    """
    Shared plumbing for httpx-backed collaborators.

    Provides:
    - HTTP client management (lazy, re-created after close)
    - Bearer token injection
    - Status code to ProviderError mapping
    """

    provider_name = "http"
    health_path = "/"

    def __init__(
        self,
        config: HttpClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self.provider_name

    def _get_auth_headers(self) -> dict[str, str]:
        if self.config.api_token:
            return {"Authorization": f"Bearer {self.config.api_token}"}
        return {}

    def _default_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
                headers={**self._default_headers(), **self._get_auth_headers()},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        allow: tuple[int, ...] = (),
    ) -> httpx.Response:
        """
        Execute a single HTTP request.

        Args:
            method: HTTP method
            path: URL path (appended to base_url)
            json: JSON body
            headers: Additional headers
            allow: Error status codes returned to the caller instead of raised

        Raises:
            ProviderError: On any unexpected status, timeout or network error
        """
        client = await self._get_client()

        if self.config.log_requests:
            logger.debug(f"[{self.name}] {method} {path}")

        try:
            response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timeout: {e}", self.name, retryable=True) from e
        except httpx.NetworkError as e:
            raise ProviderError(f"Network error: {e}", self.name, retryable=True) from e

        if self.config.log_responses:
            logger.debug(f"[{self.name}] Response: status={response.status_code}")

        if response.status_code not in allow:
            self._check_response(response)
        return response

    def _check_response(self, response: httpx.Response) -> None:
        """
        Check response for errors and raise ProviderError.

        Raises:
            RateLimitError: For 429
            ProviderError: For other errors, retryable for 5xx
        """
        if response.is_success:
            return

        status = response.status_code
        body = response.text[:200] if response.text else ""

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Rate limit exceeded",
                self.name,
                status_code=status,
                retry_after=float(retry_after) if retry_after else None,
            )

        if status in (401, 403):
            raise ProviderError(f"Authentication failed: {body}", self.name, status_code=status)

        raise ProviderError(
            f"Request failed: {body}",
            self.name,
            status_code=status,
            retryable=status >= 500,
        )

    async def health_check(self) -> bool:
        """Reachable and answering 2xx on the health path."""
        try:
            response = await self._request("GET", self.health_path)
        except ProviderError:
            return False
        return response.is_success

    async def __aenter__(self) -> HttpCollaborator:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# =============================================================================
# Control Plane
# =============================================================================


def _path(*segments: str) -> str:
    return "/" + "/".join(quote(s, safe="") for s in segments)


class ControlPlaneClient(HttpCollaborator):
    """
    Control plane provider and secret store over REST.

    Usage:
        async with ControlPlaneClient(HttpClientConfig(base_url=url, api_token=token)) as cp:
            outputs = await cp.create("compute-service.api", ResourceKind.COMPUTE_SERVICE, attrs)
    """

    provider_name = "control-plane"
    health_path = "/v1/health"

    # ==================== ResourceProvider ====================

    async def create(
        self, identifier: str, kind: ResourceKind, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/v1/resources",
            json={"identifier": identifier, "kind": kind.value, "attributes": attributes},
            allow=(409,),
        )
        if response.status_code == 409:
            logger.info(f"[{self.name}] {identifier} already exists, adopting it")
            snapshot = await self.read(identifier, kind)
            if snapshot is None:
                raise ProviderError(
                    f"{identifier} reported as existing but cannot be read",
                    self.name,
                    status_code=409,
                    retryable=True,
                )
            return snapshot.outputs
        return dict(response.json().get("outputs", {}))

    async def read(self, identifier: str, kind: ResourceKind) -> ProviderSnapshot | None:
        response = await self._request("GET", _path("v1", "resources", identifier), allow=(404,))
        if response.status_code == 404:
            return None
        data = response.json()
        return ProviderSnapshot(
            identifier=data.get("identifier", identifier),
            kind=ResourceKind(data.get("kind", kind.value)),
            attributes=dict(data.get("attributes", {})),
            outputs=dict(data.get("outputs", {})),
        )

    async def update(
        self, identifier: str, kind: ResourceKind, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        response = await self._request(
            "PUT",
            _path("v1", "resources", identifier),
            json={"kind": kind.value, "attributes": attributes},
        )
        return dict(response.json().get("outputs", {}))

    async def destroy(self, identifier: str, kind: ResourceKind) -> None:
        response = await self._request(
            "DELETE", _path("v1", "resources", identifier), allow=(404,)
        )
        if response.status_code == 404:
            logger.debug(f"[{self.name}] {identifier} already absent")

    async def redeploy(self, identifier: str, digest: str) -> RedeployReceipt:
        response = await self._request(
            "POST",
            _path("v1", "resources", identifier, "redeploy"),
            json={"digest": digest},
        )
        data = response.json() if response.content else {}
        return RedeployReceipt(
            started=response.status_code == 202,
            operation_id=data.get("operation_id"),
            digest=digest,
        )

    # ==================== SecretStore ====================

    async def grant_access(self, store: str, identifier: str, principal: str) -> None:
        response = await self._request(
            "POST",
            _path("v1", "secrets", store, "grants"),
            json={"identifier": identifier, "principal": principal},
            allow=(403, 404, 409),
        )
        if response.status_code == 404:
            raise SecretNotFound(store, identifier)
        if response.status_code == 403:
            raise AccessDenied(store, identifier)
        # 409: grant already attached
