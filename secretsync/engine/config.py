"""
Engine configuration: loads SecretStore / ExternalSecret manifests from YAML
and engine settings from env vars.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from secretsync.engine.errors import DescriptorValidationError
from secretsync.engine.models import (
    BackendKind,
    BackendRef,
    CreationPolicy,
    DataFromSource,
    FieldMapping,
    SecretDescriptor,
    SecretTemplate,
)

logger = logging.getLogger(__name__)

STORE_KINDS = ("SecretStore", "ClusterSecretStore")
DESCRIPTOR_KIND = "ExternalSecret"

PROVIDERS = {
    "vault": BackendKind.VAULT,
    "vaultlike": BackendKind.VAULT,
    "aws": BackendKind.AWS,
    "cloudsecretsmanager": BackendKind.AWS,
}

DEFAULT_REFRESH_INTERVAL = 3600.0

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


@dataclass(frozen=True)
class EngineConfig:
    """Top-level engine configuration from environment variables."""

    # Engine
    port: int = 18900
    store_backend: str = "memory"  # memory | postgres

    # Paths
    manifest_dir: Path = field(default_factory=lambda: Path.home() / ".secretsync" / "manifests")

    # Scheduler
    max_concurrent_passes: int = 4
    min_refresh_interval: float = 5.0
    backoff_base: float = 5.0
    backoff_cap: float = 300.0

    # Backends
    default_backend_concurrency: int = 4
    call_timeout: float = 10.0
    pass_timeout: float = 60.0

    # Watchdogs
    health_check_interval: float = 30.0
    reload_interval: float = 10.0

    @classmethod
    def from_env(cls) -> EngineConfig:
        workspace = Path(os.environ.get("SECRETSYNC_WORKSPACE", Path.home() / ".secretsync"))
        return cls(
            port=int(os.environ.get("SECRETSYNC_PORT", "18900")),
            store_backend=os.environ.get("SECRETSYNC_STORE", "memory"),
            manifest_dir=Path(os.environ.get("SECRETSYNC_MANIFEST_DIR", workspace / "manifests")),
            max_concurrent_passes=int(os.environ.get("SECRETSYNC_MAX_CONCURRENT_PASSES", "4")),
            min_refresh_interval=float(os.environ.get("SECRETSYNC_MIN_REFRESH_INTERVAL", "5")),
            backoff_base=float(os.environ.get("SECRETSYNC_BACKOFF_BASE", "5")),
            backoff_cap=float(os.environ.get("SECRETSYNC_BACKOFF_CAP", "300")),
            default_backend_concurrency=int(
                os.environ.get("SECRETSYNC_BACKEND_CONCURRENCY", "4")
            ),
            call_timeout=float(os.environ.get("SECRETSYNC_CALL_TIMEOUT", "10")),
            pass_timeout=float(os.environ.get("SECRETSYNC_PASS_TIMEOUT", "60")),
            health_check_interval=float(os.environ.get("SECRETSYNC_HEALTH_INTERVAL", "30")),
            reload_interval=float(os.environ.get("SECRETSYNC_RELOAD_INTERVAL", "10")),
        )


@dataclass
class ManifestSet:
    """Everything loaded from a manifest directory, plus what was rejected."""

    backends: list[BackendRef] = field(default_factory=list)
    descriptors: list[SecretDescriptor] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    # identity -> file the descriptor was loaded from
    origins: dict[str, str] = field(default_factory=dict)
    # identity -> why its document was rejected
    rejected: dict[str, str] = field(default_factory=dict)
    # file -> why (part of) it could not be attributed to any identity
    failed_files: dict[str, str] = field(default_factory=dict)


def parse_duration(value: Any) -> float:
    """Parse ``1h30m``, ``15s``, ``500ms`` or plain seconds into seconds."""
    if isinstance(value, bool):
        raise DescriptorValidationError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    if not text:
        raise DescriptorValidationError("Empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    pos = 0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise DescriptorValidationError(f"Invalid duration: {value!r}")
    return total


_READ_ERRORS = (OSError, ValueError, yaml.YAMLError)


def read_manifest_documents(manifest_path: Path) -> list[dict[str, Any]]:
    """Every YAML document in one file. Non-mapping documents are dropped.

    Raises on an unreadable file or broken YAML.
    """
    with open(manifest_path) as f:
        docs = list(yaml.safe_load_all(f))
    return [d for d in docs if d and isinstance(d, dict)]


def load_manifest_documents(manifest_path: Path) -> list[dict[str, Any]]:
    """Like read_manifest_documents, but a broken file is logged and yields nothing."""
    try:
        return read_manifest_documents(manifest_path)
    except _READ_ERRORS as e:
        logger.error("Failed to load manifest %s: %s", manifest_path, e)
        return []


def manifest_files(manifest_dir: Path) -> list[Path]:
    if not manifest_dir.is_dir():
        return []
    return sorted([*manifest_dir.glob("*.yaml"), *manifest_dir.glob("*.yml")])


def load_all_manifests(manifest_dir: Path) -> list[dict[str, Any]]:
    """Load all YAML documents from a directory."""
    manifests: list[dict[str, Any]] = []
    if not manifest_dir.is_dir():
        logger.warning("Manifest directory not found: %s", manifest_dir)
        return manifests
    for f in manifest_files(manifest_dir):
        manifests.extend(load_manifest_documents(f))
    return manifests


def _metadata(manifest: Mapping[str, Any]) -> tuple[str, str]:
    meta = manifest.get("metadata") or {}
    name = str(meta.get("name") or "").strip()
    if not name:
        raise DescriptorValidationError(f"{manifest.get('kind', '?')} is missing metadata.name")
    return name, str(meta.get("namespace") or "").strip()


def manifest_to_backend_ref(manifest: Mapping[str, Any]) -> BackendRef:
    """Convert a SecretStore / ClusterSecretStore document to a BackendRef."""
    kind = manifest.get("kind")
    if kind not in STORE_KINDS:
        raise DescriptorValidationError(f"Not a secret store manifest: {kind!r}")
    name, namespace = _metadata(manifest)
    cluster_scoped = kind == "ClusterSecretStore"
    if cluster_scoped:
        namespace = ""
    elif not namespace:
        namespace = "default"

    spec = manifest.get("spec") or {}
    provider = str(spec.get("provider") or "").lower()
    if provider not in PROVIDERS:
        raise DescriptorValidationError(
            f"{kind} {name}: unknown provider {spec.get('provider')!r} (expected vault or aws)"
        )
    backend_kind = PROVIDERS[provider]

    if backend_kind == BackendKind.AWS:
        server = str(spec.get("region") or spec.get("server") or "")
    else:
        server = str(spec.get("server") or "")
        if not server:
            raise DescriptorValidationError(f"{kind} {name}: spec.server is required for vault")

    version = str(spec.get("version") or "v2")
    if version not in ("v1", "v2"):
        raise DescriptorValidationError(f"{kind} {name}: unsupported KV version {version!r}")

    raw_auth = dict(spec.get("auth") or {})
    default_method = "token" if backend_kind == BackendKind.VAULT else "default"
    auth_method = str(raw_auth.pop("method", default_method))
    auth = {str(k): str(v) for k, v in raw_auth.items() if v is not None}

    concurrency = int(spec.get("concurrency", 0) or 0)
    if concurrency < 0:
        raise DescriptorValidationError(f"{kind} {name}: concurrency must be >= 0")

    return BackendRef(
        name=name,
        kind=backend_kind,
        namespace=namespace,
        cluster_scoped=cluster_scoped,
        server=server,
        path=str(spec.get("path") or ""),
        version=version,
        vault_namespace=str(spec.get("namespace") or ""),
        auth_method=auth_method,
        auth=auth,
        concurrency_limit=concurrency,
    )


def _store_lookup_key(store_ref: Mapping[str, Any], namespace: str) -> tuple[str, bool]:
    name = str(store_ref.get("name") or "").strip()
    if not name:
        raise DescriptorValidationError("spec.secretStoreRef.name is required")
    cluster = store_ref.get("kind", "SecretStore") == "ClusterSecretStore"
    return (name if cluster else f"{namespace}/{name}"), cluster


def manifest_to_descriptor(
    manifest: Mapping[str, Any],
    backends: Mapping[str, BackendRef],
    *,
    min_refresh_interval: float = 0.0,
) -> SecretDescriptor:
    """Convert an ExternalSecret document to a SecretDescriptor.

    ``backends`` maps BackendRef keys to refs. A namespaced SecretStore is
    only visible to ExternalSecrets in the same namespace.
    """
    if manifest.get("kind") != DESCRIPTOR_KIND:
        raise DescriptorValidationError(f"Not an ExternalSecret manifest: {manifest.get('kind')!r}")
    name, namespace = _metadata(manifest)
    namespace = namespace or "default"
    identity = f"{namespace}/{name}"
    spec = manifest.get("spec") or {}

    store_key, cluster = _store_lookup_key(spec.get("secretStoreRef") or {}, namespace)
    backend = backends.get(store_key)
    if backend is None or backend.cluster_scoped != cluster:
        raise DescriptorValidationError(
            f"ExternalSecret {identity}: secret store {store_key!r} not found"
        )

    mappings: list[FieldMapping] = []
    seen: set[str] = set()
    for entry in spec.get("data") or []:
        remote = entry.get("remoteRef") or {}
        secret_key = str(entry.get("secretKey") or "")
        if not secret_key or not remote.get("key"):
            raise DescriptorValidationError(
                f"ExternalSecret {identity}: data entries need secretKey and remoteRef.key"
            )
        if secret_key in seen:
            raise DescriptorValidationError(
                f"ExternalSecret {identity}: duplicate secretKey {secret_key!r}"
            )
        seen.add(secret_key)
        mappings.append(
            FieldMapping(
                secret_key=secret_key,
                remote_key=str(remote["key"]),
                remote_property=str(remote["property"]) if remote.get("property") else None,
                version=str(remote["version"]) if remote.get("version") else None,
            )
        )

    data_from: list[DataFromSource] = []
    for entry in spec.get("dataFrom") or []:
        if entry.get("extract"):
            extract = entry["extract"]
            data_from.append(
                DataFromSource(
                    extract=str(extract.get("key") or ""),
                    version=str(extract["version"]) if extract.get("version") else None,
                )
            )
        elif entry.get("find"):
            data_from.append(DataFromSource(find_path=str(entry["find"].get("path") or "")))
        else:
            raise DescriptorValidationError(
                f"ExternalSecret {identity}: dataFrom entries need extract or find"
            )
        if not (data_from[-1].extract or data_from[-1].find_path):
            raise DescriptorValidationError(
                f"ExternalSecret {identity}: dataFrom entry has an empty key/path"
            )

    template: SecretTemplate | None = None
    raw_template = spec.get("template")
    if raw_template:
        entries = raw_template.get("data") or {}
        if not isinstance(entries, dict):
            raise DescriptorValidationError(
                f"ExternalSecret {identity}: template.data must be a mapping"
            )
        template = SecretTemplate(
            type=str(raw_template.get("type") or "Opaque"),
            data=tuple((str(k), str(v)) for k, v in entries.items()),
        )

    if not mappings and not data_from and not (template and template.data):
        raise DescriptorValidationError(
            f"ExternalSecret {identity}: needs at least one of data, dataFrom or template.data"
        )

    refresh = parse_duration(spec.get("refreshInterval", DEFAULT_REFRESH_INTERVAL))
    if refresh <= 0:
        raise DescriptorValidationError(
            f"ExternalSecret {identity}: refreshInterval must be greater than zero"
        )
    if refresh < min_refresh_interval:
        logger.warning(
            "ExternalSecret %s: refreshInterval %.1fs below minimum, using %.1fs",
            identity,
            refresh,
            min_refresh_interval,
        )
        refresh = min_refresh_interval

    target = spec.get("target") or {}
    policy_str = str(target.get("creationPolicy") or "Owner")
    try:
        policy = CreationPolicy(policy_str)
    except ValueError:
        raise DescriptorValidationError(
            f"ExternalSecret {identity}: unknown creationPolicy {policy_str!r}"
        ) from None
    deletion = str(target.get("deletionPolicy") or "Delete")
    if deletion not in ("Delete", "Retain"):
        raise DescriptorValidationError(
            f"ExternalSecret {identity}: unknown deletionPolicy {deletion!r}"
        )

    return SecretDescriptor(
        namespace=namespace,
        name=name,
        backend=backend,
        mappings=mappings,
        data_from=data_from,
        template=template,
        refresh_interval=refresh,
        creation_policy=policy,
        target_name=str(target.get("name") or name),
        delete_on_removal=deletion == "Delete",
    )


def parse_manifests(
    manifests: list[dict[str, Any]],
    *,
    min_refresh_interval: float = 0.0,
    sources: list[str] | None = None,
) -> ManifestSet:
    """Turn raw documents into refs and descriptors. Invalid documents are
    logged, recorded in ``errors`` and skipped; the rest still load.

    ``sources`` names the file each document came from, index for index.
    """
    result = ManifestSet()
    by_key: dict[str, BackendRef] = {}

    for doc in manifests:
        if doc.get("kind") not in STORE_KINDS:
            continue
        try:
            ref = manifest_to_backend_ref(doc)
        except (DescriptorValidationError, ValueError, TypeError, AttributeError) as e:
            _reject(result, doc, e)
            continue
        if ref.key in by_key:
            _reject(result, doc, DescriptorValidationError(f"duplicate secret store {ref.key}"))
            continue
        by_key[ref.key] = ref
        result.backends.append(ref)

    seen: set[str] = set()
    for i, doc in enumerate(manifests):
        source = sources[i] if sources else ""
        kind = doc.get("kind")
        if kind in STORE_KINDS:
            continue
        if kind != DESCRIPTOR_KIND:
            _reject_descriptor(
                result, doc, DescriptorValidationError(f"unsupported kind {kind!r}"), source
            )
            continue
        try:
            descriptor = manifest_to_descriptor(
                doc, by_key, min_refresh_interval=min_refresh_interval
            )
        except (DescriptorValidationError, ValueError, TypeError, AttributeError) as e:
            _reject_descriptor(result, doc, e, source)
            continue
        if descriptor.identity in seen:
            _reject(
                result,
                doc,
                DescriptorValidationError(f"duplicate ExternalSecret {descriptor.identity}"),
            )
            continue
        seen.add(descriptor.identity)
        result.descriptors.append(descriptor)
        if source:
            result.origins[descriptor.identity] = source

    return result


def load_all(manifest_dir: Path, *, min_refresh_interval: float = 0.0) -> ManifestSet:
    """Load and parse every manifest in a directory.

    A file that cannot be read or parsed is recorded in ``failed_files``;
    the other files still load.
    """
    documents: list[dict[str, Any]] = []
    sources: list[str] = []
    unreadable: dict[str, str] = {}
    if not manifest_dir.is_dir():
        logger.warning("Manifest directory not found: %s", manifest_dir)
    for path in manifest_files(manifest_dir):
        try:
            docs = read_manifest_documents(path)
        except _READ_ERRORS as e:
            logger.error("Failed to load manifest %s: %s", path, e)
            unreadable[str(path)] = f"{path.name}: {e}"
            continue
        documents.extend(docs)
        sources.extend([str(path)] * len(docs))

    result = parse_manifests(
        documents, min_refresh_interval=min_refresh_interval, sources=sources
    )
    for path, message in unreadable.items():
        result.failed_files[path] = message
        result.errors.append(message)
    logger.info(
        "Loaded %d secret stores and %d external secrets from %s (%d rejected)",
        len(result.backends),
        len(result.descriptors),
        manifest_dir,
        len(result.errors),
    )
    return result


def _document_identity(doc: Mapping[str, Any]) -> str | None:
    meta = doc.get("metadata")
    if not isinstance(meta, Mapping):
        return None
    name = str(meta.get("name") or "").strip()
    if not name:
        return None
    namespace = str(meta.get("namespace") or "").strip() or "default"
    return f"{namespace}/{name}"


def _reject(result: ManifestSet, doc: Mapping[str, Any], error: Exception) -> str:
    meta = doc.get("metadata")
    if not isinstance(meta, Mapping):
        meta = {}
    label = f"{doc.get('kind', '?')} {meta.get('namespace') or '-'}/{meta.get('name') or '?'}"
    message = f"{label}: {error}"
    logger.error("Invalid manifest skipped: %s", message)
    result.errors.append(message)
    return message


def _reject_descriptor(
    result: ManifestSet, doc: Mapping[str, Any], error: Exception, source: str
) -> None:
    """Reject a descriptor document, remembering whose it was.

    Without a usable name the whole file it came from is marked failed.
    """
    message = _reject(result, doc, error)
    identity = _document_identity(doc)
    if identity:
        result.rejected[identity] = message
    elif source:
        result.failed_files.setdefault(source, message)
