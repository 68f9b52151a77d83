"""
Vault-like KV backend over HTTP.

Speaks the Vault KV v1/v2 API with httpx. Supports token, AppRole and
Kubernetes auth; login-based tokens are cached for the client's lifetime and
refreshed once when the server answers 403.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import httpx

from secretsync.backends.base import RemoteDocument, SecretBackend
from secretsync.engine.errors import (
    BackendAuthError,
    BackendUnreachableError,
    DescriptorValidationError,
    SecretNotFoundError,
)
from secretsync.engine.models import BackendHealth, BackendRef

logger = logging.getLogger(__name__)

DEFAULT_K8S_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"

# 429 = unsealed standby, 472 = DR secondary, 473 = performance standby
HEALTHY_STATUS_CODES = {200, 429, 472, 473}

AUTH_METHODS = ("token", "approle", "kubernetes")


def _read_setting(auth: dict[str, str], name: str) -> str:
    """Read an auth setting given literally, via ``<name>Env`` or via ``<name>File``."""
    if auth.get(name):
        return auth[name]
    env_name = auth.get(f"{name}Env")
    if env_name:
        return os.environ.get(env_name, "")
    file_name = auth.get(f"{name}File")
    if file_name:
        path = Path(file_name)
        if path.exists():
            return path.read_text().strip()
    return ""


class VaultBackend(SecretBackend):
    """KV engine client for one SecretStore."""

    def __init__(
        self,
        ref: BackendRef,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(ref)
        if not ref.server:
            raise DescriptorValidationError(f"Vault store {ref.key} has no server address")
        if ref.auth_method not in AUTH_METHODS:
            raise DescriptorValidationError(
                f"Vault store {ref.key}: unsupported auth method '{ref.auth_method}'"
            )
        self.mount = (ref.path or "secret").strip("/")
        self.kv_version = ref.version or "v2"
        headers = {}
        if ref.vault_namespace:
            headers["X-Vault-Namespace"] = ref.vault_namespace
        self._client = httpx.AsyncClient(
            base_url=ref.server.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self._token: str | None = None

    async def close(self) -> None:
        await self._client.aclose()

    # ── Auth ────────────────────────────────────────────────────────

    async def _login(self) -> str:
        auth = self.ref.auth
        method = self.ref.auth_method
        if method == "token":
            token = _read_setting(auth, "token")
            if not token:
                raise BackendAuthError(f"Vault store {self.ref.key}: no token configured")
            return token

        mount_path = auth.get("mountPath", method)
        if method == "approle":
            body = {
                "role_id": _read_setting(auth, "roleId"),
                "secret_id": _read_setting(auth, "secretId"),
            }
        else:
            jwt = _read_setting(auth, "jwt")
            if not jwt:
                token_path = Path(auth.get("serviceAccountTokenPath", DEFAULT_K8S_TOKEN_PATH))
                jwt = token_path.read_text().strip() if token_path.exists() else ""
            body = {"role": auth.get("role", ""), "jwt": jwt}

        try:
            resp = await self._client.post(f"/v1/auth/{mount_path}/login", json=body)
        except httpx.TransportError as e:
            raise BackendUnreachableError(f"Vault login failed: {e}") from e
        if resp.status_code in (400, 401, 403):
            raise BackendAuthError(
                f"Vault {method} login rejected for store {self.ref.key} (HTTP {resp.status_code})"
            )
        if resp.status_code >= 300:
            raise BackendUnreachableError(f"Vault login returned HTTP {resp.status_code}")
        token: str = resp.json()["auth"]["client_token"]
        logger.info("Vault %s login succeeded for store %s", method, self.ref.key)
        return token

    async def _token_header(self) -> dict[str, str]:
        if self._token is None:
            self._token = await self._login()
        return {"X-Vault-Token": self._token}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated request with one re-login on 403 for login-based auth."""
        for attempt in range(2):
            headers = await self._token_header()
            try:
                resp = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                raise BackendUnreachableError(f"Vault request failed: {e}") from e
            if resp.status_code == 403 and self.ref.auth_method != "token" and attempt == 0:
                logger.info("Vault token rejected for store %s, logging in again", self.ref.key)
                self._token = None
                continue
            return resp
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response, what: str) -> None:
        code = resp.status_code
        if code == 404:
            raise SecretNotFoundError(f"{what} not found")
        if code in (401, 403):
            raise BackendAuthError(f"Permission denied reading {what} (HTTP {code})")
        if code == 429 or code >= 500:
            raise BackendUnreachableError(f"Vault returned HTTP {code} for {what}")
        if code >= 300:
            raise BackendUnreachableError(f"Unexpected HTTP {code} for {what}")

    # ── SecretBackend ───────────────────────────────────────────────

    def _data_url(self, remote_key: str) -> str:
        key = remote_key.strip("/")
        if self.kv_version == "v1":
            return f"/v1/{self.mount}/{key}"
        return f"/v1/{self.mount}/data/{key}"

    def _list_url(self, prefix: str) -> str:
        if self.kv_version == "v1":
            return f"/v1/{self.mount}/{prefix}"
        return f"/v1/{self.mount}/metadata/{prefix}"

    async def fetch_document(self, remote_key: str, version: str | None = None) -> RemoteDocument:
        params = {"version": version} if version and self.kv_version != "v1" else None
        resp = await self._request("GET", self._data_url(remote_key), params=params)
        self._raise_for_status(resp, f"Vault secret '{remote_key}'")

        body = resp.json()
        data = body.get("data") or {}
        if self.kv_version == "v1":
            fields, revision = data, None
        else:
            fields = data.get("data")
            metadata = data.get("metadata") or {}
            revision = str(metadata["version"]) if metadata.get("version") is not None else None
            if fields is None:
                # Soft-deleted or destroyed version
                raise SecretNotFoundError(f"Vault secret '{remote_key}' has no live data")

        raw = json.dumps(fields, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return RemoteDocument(key=remote_key, raw=raw, fields=fields, revision=revision)

    async def list_keys(self, prefix: str) -> list[str]:
        prefix = prefix.strip("/")
        if prefix:
            prefix += "/"
        resp = await self._request("LIST", self._list_url(prefix))
        if resp.status_code == 404:
            return []
        self._raise_for_status(resp, f"Vault path '{prefix}'")

        keys: list[str] = []
        for entry in (resp.json().get("data") or {}).get("keys", []):
            if entry.endswith("/"):
                keys.extend(await self.list_keys(prefix + entry))
            else:
                keys.append(prefix + entry)
        return sorted(keys)

    async def health_check(self) -> BackendHealth:
        try:
            resp = await self._client.get("/v1/sys/health")
        except httpx.HTTPError as e:
            logger.debug("Vault health check failed for %s: %s", self.ref.key, e)
            return BackendHealth.UNREACHABLE
        if resp.status_code in HEALTHY_STATUS_CODES:
            return BackendHealth.HEALTHY
        return BackendHealth.UNREACHABLE
