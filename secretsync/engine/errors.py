"""
Error taxonomy for a reconciliation pass.

Every failure a pass can hit maps onto one ErrorReason so the descriptor
status always names why it is in Error.
"""

from __future__ import annotations

from secretsync.engine.models import ErrorReason


class SecretSyncError(Exception):
    """Base class for all sync failures."""

    reason: ErrorReason = ErrorReason.INTERNAL


class SecretNotFoundError(SecretSyncError):
    """Remote key or property does not exist."""

    reason = ErrorReason.NOT_FOUND


class BackendAuthError(SecretSyncError):
    """Backend rejected our credentials."""

    reason = ErrorReason.AUTH_ERROR


class BackendUnreachableError(SecretSyncError):
    """Network failure, timeout or 5xx from a backend."""

    reason = ErrorReason.UNREACHABLE


class TemplateSyntaxError(SecretSyncError):
    reason = ErrorReason.TEMPLATE_SYNTAX


class MissingFieldError(SecretSyncError):
    """Template placeholder references a key that was not resolved."""

    reason = ErrorReason.MISSING_FIELD

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Template references unknown field '{field_name}'")
        self.field_name = field_name


class OwnershipConflictError(SecretSyncError):
    """Destination object is owned by another descriptor."""

    reason = ErrorReason.OWNERSHIP_CONFLICT

    def __init__(self, target: str, owner: str | None, claimant: str) -> None:
        super().__init__(
            f"Secret {target} is owned by {owner or '<unmanaged>'}, "
            f"refusing to write for {claimant}"
        )
        self.target = target
        self.owner = owner
        self.claimant = claimant


class ConcurrencyConflictError(SecretSyncError):
    """Stale resource version on update, or create of an existing object."""

    reason = ErrorReason.CONFLICT


class StoreObjectNotFoundError(SecretSyncError):
    """Update targeted an object that no longer exists."""

    reason = ErrorReason.CONFLICT


class CreationForbiddenError(SecretSyncError):
    reason = ErrorReason.CREATION_FORBIDDEN


class PassTimeoutError(SecretSyncError):
    reason = ErrorReason.TIMEOUT


class DescriptorValidationError(SecretSyncError):
    """Manifest could not be turned into a valid descriptor or backend."""

    reason = ErrorReason.INVALID_DESCRIPTOR


class PassCancelledError(Exception):
    """Raised at a cancellation checkpoint. Not a failure: status is left alone."""
