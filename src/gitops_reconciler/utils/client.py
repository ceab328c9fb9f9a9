# ABOUTME: Kubernetes REST client used as the live cluster boundary
# ABOUTME: Async httpx client with tenacity retries, server-side apply and structured errors

"""
Kubernetes API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module talks to a target cluster's API server on behalf of the
Live-State Observer and the Sync Executor. It handles:

1. PATH BUILDING: (apiVersion, kind, namespace, name) -> REST path
2. AUTHENTICATION: Bearer token from the cluster's ClusterInstance
3. ERROR HANDLING: HTTP errors become KubernetesApiError, then the
   engine's ObserverError / ApplyError at the boundary
4. RETRY LOGIC: Timeouts are retried with exponential backoff

=============================================================================
KUBERNETES REST PATHS
=============================================================================

Core group (apiVersion "v1"):
    /api/v1/namespaces/{ns}/configmaps/{name}
    /api/v1/namespaces/{name}                    (cluster-scoped)

Named groups (apiVersion "apps/v1"):
    /apis/apps/v1/namespaces/{ns}/deployments/{name}

Listing across all namespaces drops the namespace segment:
    /apis/apps/v1/deployments?labelSelector=app.kubernetes.io/instance=web

=============================================================================
SERVER-SIDE APPLY
=============================================================================

Writes use server-side apply:

    PATCH {path}?fieldManager=gitops-reconciler&force=true
    Content-Type: application/apply-patch+yaml

The same request creates a missing object and updates an existing one, and
re-applying an unchanged manifest leaves the object untouched. That is what
makes every sync action idempotent. JSON is valid YAML, so the body is the
canonical JSON of the manifest.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import ApplyError, ObserverError
from gitops_reconciler.models import ResourceKey, canonical_json

if TYPE_CHECKING:
    from gitops_reconciler.config import ClusterInstance
    from gitops_reconciler.utils.cluster import KindRef

logger = structlog.get_logger(__name__)

# Kinds whose plural is not derivable by the simple rules in plural_for()
_IRREGULAR_PLURALS = {
    "Endpoints": "endpoints",
    "PodSecurityPolicy": "podsecuritypolicies",
}


def plural_for(kind: str) -> str:
    """Lower-case REST plural of a kind: Deployment -> deployments, Ingress -> ingresses."""
    if kind in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[kind]
    lower = kind.lower()
    if lower.endswith("y") and lower[-2:-1] not in ("a", "e", "i", "o", "u"):
        return lower[:-1] + "ies"
    if lower.endswith(("s", "x", "ch", "sh")):
        return lower + "es"
    return lower + "s"


def resource_path(api_version: str, kind: str, namespace: str = "", name: str | None = None) -> str:
    """REST path for one object, or for a collection when ``name`` is None."""
    api_version = api_version or "v1"
    prefix = "/api/v1" if api_version == "v1" else f"/apis/{api_version}"
    scope = f"/namespaces/{namespace}" if namespace else ""
    path = f"{prefix}{scope}/{plural_for(kind)}"
    return f"{path}/{name}" if name else path


# =============================================================================
# ERROR CLASS
# =============================================================================


class KubernetesApiError(Exception):
    """
    Structured API server error.

    The API server answers failures with a ``Status`` object:

        {"kind": "Status", "code": 422, "reason": "Invalid",
         "message": "Deployment.apps \\"web\\" is invalid: ..."}

    ``reason`` is the machine-readable cause (NotFound, Invalid, Forbidden,
    Conflict, TooManyRequests), ``message`` the human one.
    """

    def __init__(self, code: int, message: str, reason: str | None = None) -> None:
        self.code = code
        self.message = message
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.reason:
            base += f" - {self.reason}"
        return base


# =============================================================================
# KUBERNETES CLIENT
# =============================================================================


class KubernetesClient:
    """
    Async Kubernetes API client implementing the ClusterClient protocol.

    LIFECYCLE:
    ----------
    ALWAYS use the context manager pattern:

        async with KubernetesClient(instance) as cluster:
            obj = await cluster.read(key)

    The HTTP connection pool is created in __aenter__ and closed in
    __aexit__, even when the block raises.
    """

    def __init__(
        self,
        instance: ClusterInstance,
        *,
        field_manager: str = "gitops-reconciler",
        timeout: float = 30.0,
    ) -> None:
        self._instance = instance
        self._field_manager = field_manager
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._instance.name

    async def __aenter__(self) -> KubernetesClient:
        headers = {"Accept": "application/json"}
        token = self._instance.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._instance.url,
            headers=headers,
            timeout=self._timeout,
            verify=not self._instance.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        content: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Make one API request.

        Raises:
            KubernetesApiError: On 4xx / 5xx answers.
            httpx.TimeoutException: On timeout, after three attempts.
            RuntimeError: If the client is used outside ``async with``.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, cluster=self._instance.name)
        log.debug("Making Kubernetes API request")

        response = await self._client.request(method, path, params=params, content=content, headers=headers)

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}"
            reason = None
            try:
                status = response.json()
                message = status.get("message", message)
                reason = status.get("reason")
            except ValueError:
                reason = response.text[:200] or None
            log.debug("Kubernetes API error", status=response.status_code, reason=reason)
            raise KubernetesApiError(code=response.status_code, message=message, reason=reason)

        return response.json() if response.content else {}

    # =========================================================================
    # CLUSTER BOUNDARY
    # =========================================================================

    async def read(self, key: ResourceKey) -> dict[str, Any] | None:
        path = resource_path(key.api_version, key.kind, key.namespace, key.name)
        try:
            return await self._request("GET", path)
        except KubernetesApiError as e:
            if e.code == 404:
                return None
            raise ObserverError(str(e), resource=str(key)) from e
        except httpx.HTTPError as e:
            raise ObserverError(f"Reading {key} failed: {e!r}", resource=str(key)) from e

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_manifest(manifest)
        path = resource_path(key.api_version, key.kind, key.namespace, key.name)
        try:
            return await self._request(
                "PATCH",
                path,
                params={"fieldManager": self._field_manager, "force": "true"},
                content=canonical_json(manifest),
                headers={"Content-Type": "application/apply-patch+yaml"},
            )
        except KubernetesApiError as e:
            raise ApplyError(e.message, reason=e.reason or e.message, code=e.code, resource=str(key)) from e
        except httpx.HTTPError as e:
            raise ApplyError(f"Applying {key} failed: {e!r}", resource=str(key)) from e

    async def delete(self, key: ResourceKey) -> bool:
        path = resource_path(key.api_version, key.kind, key.namespace, key.name)
        try:
            await self._request("DELETE", path, params={"propagationPolicy": "Foreground"})
        except KubernetesApiError as e:
            if e.code == 404:
                return False
            raise ApplyError(e.message, reason=e.reason or e.message, code=e.code, resource=str(key)) from e
        except httpx.HTTPError as e:
            raise ApplyError(f"Deleting {key} failed: {e!r}", resource=str(key)) from e
        return True

    async def list_managed(self, label: str, value: str, kinds: Iterable[KindRef]) -> list[dict[str, Any]]:
        """
        List objects carrying ``label=value`` for every (apiVersion, kind).

        List responses omit kind/apiVersion on items; they are filled back in.
        A kind the cluster does not serve (CRD not installed) lists as empty.
        """
        items: list[dict[str, Any]] = []
        for api_version, kind in sorted(set(kinds)):
            path = resource_path(api_version, kind)
            try:
                result = await self._request("GET", path, params={"labelSelector": f"{label}={value}"})
            except KubernetesApiError as e:
                if e.code == 404:
                    continue
                raise ObserverError(str(e)) from e
            except httpx.HTTPError as e:
                raise ObserverError(f"Listing {kind} failed: {e!r}") from e
            for item in result.get("items") or []:
                item.setdefault("apiVersion", api_version or "v1")
                item.setdefault("kind", kind)
                items.append(item)
        return items
