"""
Data models for the sync engine.

All models are plain dataclasses, matching the frozen-dataclass pattern in
secretsync.config. Only descriptor status and backend health are mutable.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

OWNER_ANNOTATION = "secretsync.io/owner"


class BackendKind(StrEnum):
    VAULT = "VaultLike"
    AWS = "CloudSecretsManager"


class BackendHealth(StrEnum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"


class CreationPolicy(StrEnum):
    OWNER = "Owner"
    MERGE = "Merge"
    NONE = "None"


class SyncStatus(StrEnum):
    PENDING = "Pending"
    SYNCED = "Synced"
    ERROR = "Error"


class PassPhase(StrEnum):
    PENDING = "Pending"
    FETCHING = "Fetching"
    RENDERING = "Rendering"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    SYNCED = "Synced"
    ERROR = "Error"


class ErrorReason(StrEnum):
    NOT_FOUND = "NotFound"
    AUTH_ERROR = "AuthError"
    UNREACHABLE = "Unreachable"
    TEMPLATE_SYNTAX = "TemplateSyntaxError"
    MISSING_FIELD = "MissingField"
    OWNERSHIP_CONFLICT = "OwnershipConflict"
    CONFLICT = "Conflict"
    TIMEOUT = "Timeout"
    CREATION_FORBIDDEN = "NotFoundAndCreationForbidden"
    INVALID_DESCRIPTOR = "InvalidDescriptor"
    INTERNAL = "Internal"


class WriteAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NONE = "none"


@dataclass
class BackendRef:
    """Identity and connection parameters of an external secret source.

    Loaded from a SecretStore / ClusterSecretStore manifest. ``health`` is the
    only field mutated after load (by the health-check watchdog).
    """

    name: str
    kind: BackendKind
    namespace: str = ""
    cluster_scoped: bool = False

    # Connection
    server: str = ""  # Vault address, or AWS region for CloudSecretsManager
    path: str = ""  # KV mount / key prefix
    version: str = "v2"  # KV engine version (Vault only)
    vault_namespace: str = ""
    auth_method: str = "token"
    auth: dict[str, str] = field(default_factory=dict)

    # 0 = use the engine default
    concurrency_limit: int = 0

    health: BackendHealth = BackendHealth.UNKNOWN

    @property
    def key(self) -> str:
        if self.cluster_scoped or not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    def connection_fingerprint(self) -> tuple[Any, ...]:
        """Everything that requires a new client when it changes."""
        return (
            self.kind,
            self.server,
            self.path,
            self.version,
            self.vault_namespace,
            self.auth_method,
            tuple(sorted(self.auth.items())),
            self.concurrency_limit,
        )


@dataclass(frozen=True)
class FieldMapping:
    """Local key ← (remote key, remote property)."""

    secret_key: str
    remote_key: str
    remote_property: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class DataFromSource:
    """Bulk source: every property of one remote key, or every key under a prefix."""

    extract: str = ""
    find_path: str = ""
    version: str | None = None


@dataclass(frozen=True)
class SecretTemplate:
    """Target-key → template text. A single-blob template has one entry."""

    type: str = "Opaque"
    data: tuple[tuple[str, str], ...] = ()

    @property
    def entries(self) -> dict[str, str]:
        return dict(self.data)


@dataclass
class DescriptorStatus:
    sync_status: SyncStatus = SyncStatus.PENDING
    phase: PassPhase = PassPhase.PENDING
    last_sync_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str = ""
    error_reason: ErrorReason | None = None
    content_hash: str = ""
    consecutive_errors: int = 0
    next_retry_seconds: float | None = None
    # set while the manifest is broken and the last valid spec is kept
    manifest_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "sync_status": self.sync_status.value,
            "phase": self.phase.value,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
            "error_reason": self.error_reason.value if self.error_reason else None,
            "content_hash": self.content_hash,
            "consecutive_errors": self.consecutive_errors,
            "next_retry_seconds": self.next_retry_seconds,
            "manifest_error": self.manifest_error,
        }


@dataclass
class SecretDescriptor:
    """Desired state for one synchronized secret (an ExternalSecret manifest)."""

    namespace: str
    name: str
    backend: BackendRef
    mappings: list[FieldMapping] = field(default_factory=list)
    data_from: list[DataFromSource] = field(default_factory=list)
    template: SecretTemplate | None = None
    refresh_interval: float = 3600.0
    creation_policy: CreationPolicy = CreationPolicy.OWNER
    target_name: str = ""
    delete_on_removal: bool = True

    status: DescriptorStatus = field(default_factory=DescriptorStatus)

    def __post_init__(self) -> None:
        if not self.target_name:
            self.target_name = self.name

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def secret_type(self) -> str:
        return self.template.type if self.template else "Opaque"

    def snapshot(self) -> SecretDescriptor:
        """Copy that registry updates cannot reach. Shares ``status``."""
        return replace(self, mappings=list(self.mappings), data_from=list(self.data_from))

    def spec_fingerprint(self) -> tuple[Any, ...]:
        """Sync-relevant spec; a change resets status to Pending."""
        return (
            tuple(self.mappings),
            tuple(self.data_from),
            self.template,
            self.target_name,
            self.creation_policy,
            self.backend.key,
            self.backend.connection_fingerprint(),
        )


@dataclass
class ResolvedSecretValue:
    """One remote value, held only for the duration of a reconciliation pass."""

    remote_key: str
    remote_property: str | None
    value: bytearray
    revision: str | None = None

    def wipe(self) -> None:
        for i in range(len(self.value)):
            self.value[i] = 0
        self.value.clear()


def content_hash(data: Mapping[str, bytes | bytearray]) -> str:
    """SHA-256 over entries sorted by key; independent of insertion order."""
    digest = hashlib.sha256()
    for key in sorted(data):
        value = bytes(data[key])
        digest.update(key.encode("utf-8"))
        digest.update(b"\0")
        digest.update(str(len(value)).encode("ascii"))
        digest.update(b"\0")
        digest.update(value)
    return digest.hexdigest()


@dataclass
class RenderedPayload:
    """Final key/value map for the destination store."""

    data: dict[str, bytearray]
    owner: str | None
    secret_type: str = "Opaque"
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = content_hash(self.data)

    def wipe(self) -> None:
        for value in self.data.values():
            for i in range(len(value)):
                value[i] = 0
            value.clear()
        self.data.clear()


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    identity: str
    status: SyncStatus
    action: WriteAction = WriteAction.NONE
    reason: ErrorReason | None = None
    error: str = ""
    content_hash: str = ""
    duration_ms: int = 0
    retry_in_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SYNCED
