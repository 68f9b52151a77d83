"""
Cloud secrets manager backend (AWS Secrets Manager via boto3).

boto3 is synchronous, so every call runs in the default executor.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import os
from collections.abc import Callable
from typing import Any

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from secretsync.backends.base import RemoteDocument, SecretBackend
from secretsync.engine.errors import (
    BackendAuthError,
    BackendUnreachableError,
    SecretNotFoundError,
)
from secretsync.engine.models import BackendHealth, BackendRef

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"ResourceNotFoundException"}
AUTH_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "DecryptionFailure",
    "InvalidClientTokenId",
}


def _build_client(ref: BackendRef) -> Any:
    kwargs: dict[str, Any] = {"region_name": ref.server or os.environ.get("AWS_DEFAULT_REGION")}
    auth = ref.auth
    if ref.auth_method == "static":
        kwargs["aws_access_key_id"] = os.environ.get(auth.get("accessKeyIdEnv", ""), "")
        kwargs["aws_secret_access_key"] = os.environ.get(auth.get("secretAccessKeyEnv", ""), "")
        if auth.get("sessionTokenEnv"):
            kwargs["aws_session_token"] = os.environ.get(auth["sessionTokenEnv"], "")
    if auth.get("endpointUrl"):
        kwargs["endpoint_url"] = auth["endpointUrl"]
    return boto3.client("secretsmanager", **kwargs)


class AWSSecretsManagerBackend(SecretBackend):
    """Secrets Manager client for one SecretStore."""

    def __init__(self, ref: BackendRef, client: Any | None = None) -> None:
        super().__init__(ref)
        self._client = client if client is not None else _build_client(ref)
        self.prefix = ref.path.strip("/")

    def _full_key(self, remote_key: str) -> str:
        return f"{self.prefix}/{remote_key}" if self.prefix else remote_key

    async def _call(self, fn: Callable[..., Any], what: str, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, **kwargs))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in NOT_FOUND_CODES:
                raise SecretNotFoundError(f"{what} not found") from e
            if code in AUTH_CODES:
                raise BackendAuthError(f"Access denied for {what} ({code})") from e
            raise BackendUnreachableError(f"Secrets Manager error for {what} ({code})") from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise BackendAuthError(f"No usable AWS credentials for store {self.ref.key}") from e
        except BotoCoreError as e:
            raise BackendUnreachableError(f"Secrets Manager unreachable: {e}") from e

    async def fetch_document(self, remote_key: str, version: str | None = None) -> RemoteDocument:
        kwargs: dict[str, Any] = {"SecretId": self._full_key(remote_key)}
        if version:
            if version.startswith("AWS"):
                kwargs["VersionStage"] = version
            else:
                kwargs["VersionId"] = version

        resp = await self._call(
            self._client.get_secret_value, f"secret '{remote_key}'", **kwargs
        )
        revision = resp.get("VersionId")
        if resp.get("SecretString") is not None:
            text: str = resp["SecretString"]
            fields = None
            try:
                parsed = json.loads(text)
                if isinstance(parsed, dict):
                    fields = parsed
            except json.JSONDecodeError:
                pass
            return RemoteDocument(
                key=remote_key, raw=text.encode("utf-8"), fields=fields, revision=revision
            )
        return RemoteDocument(
            key=remote_key, raw=bytes(resp.get("SecretBinary") or b""), revision=revision
        )

    async def list_keys(self, prefix: str) -> list[str]:
        full_prefix = self._full_key(prefix.strip("/")) if prefix else self.prefix

        def _collect() -> list[str]:
            paginator = self._client.get_paginator("list_secrets")
            kwargs: dict[str, Any] = {}
            if full_prefix:
                kwargs["Filters"] = [{"Key": "name", "Values": [full_prefix]}]
            names: list[str] = []
            for page in paginator.paginate(**kwargs):
                names.extend(entry["Name"] for entry in page.get("SecretList", []))
            return names

        names = await self._call(_collect, f"prefix '{prefix}'")
        strip = f"{self.prefix}/" if self.prefix else ""
        under = f"{full_prefix}/" if full_prefix else ""
        return sorted(
            name[len(strip) :] if strip and name.startswith(strip) else name
            for name in names
            if name.startswith(under)
        )

    async def health_check(self) -> BackendHealth:
        try:
            await self._call(self._client.list_secrets, "health probe", MaxResults=1)
            return BackendHealth.HEALTHY
        except Exception as e:
            logger.debug("Secrets Manager health check failed for %s: %s", self.ref.key, e)
            return BackendHealth.UNREACHABLE
