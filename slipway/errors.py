"""Exception hierarchy shared by the mirror engine, the registry client and the reconciler."""
from __future__ import annotations


class SlipwayError(Exception):
    """Base class for every failure a reconcile cycle can report."""


class ResourceNotFoundError(SlipwayError):
    """The ImageMirror resource no longer exists."""


class ResourceLoadError(SlipwayError):
    """The ImageMirror resource could not be read for a reason other than absence."""


class InvalidResourceError(SlipwayError):
    """The stored resource does not match the ImageMirror schema."""


class CredentialError(SlipwayError):
    """A registry credential could not be resolved."""


class SecretNotFoundError(CredentialError):
    """The referenced Secret does not exist."""


class CredentialDecodeError(CredentialError):
    """The Secret exists but its token payload is malformed."""


class InvalidPatternError(SlipwayError):
    """The policy's ``tag_regex`` does not compile."""


class RegistryError(SlipwayError):
    """A registry interaction failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RegistryAuthError(RegistryError):
    """The registry rejected the bearer token (401/403)."""


class RegistryNetworkError(RegistryError):
    """Transport failure, timeout or 5xx from the registry."""


class RegistryNotFoundError(RegistryError):
    """The repository or image does not exist on the registry."""


class CopyError(RegistryError):
    """A tag could not be copied for a reason other than auth or network."""


class DeadlineExceededError(SlipwayError):
    """The reconcile cycle ran out of time before the next blocking call."""


class PersistError(SlipwayError):
    """Writing the ImageMirror status back to the API server failed."""
