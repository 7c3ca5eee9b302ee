# src/mci_registry/errors.py
"""
Error taxonomy for the registry core.

Every error carries a stable `error_type` string that boundary adapters use
for their responses. Messages never contain payload bytes.

Retry policy by class:
- FetchError, StoreError: transient, retried with bounded backoff before
  surfacing (KeyCollisionError excepted).
- IntegrityError, ValidationError: never retried.
- ConflictError: caller re-reads current state and resubmits.
"""


class RegistryError(Exception):
    """Base class for all registry errors."""

    error_type = "registry_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class FetchError(RegistryError):
    """Source unreachable or rejected the request."""

    error_type = "fetch_error"


class IntegrityError(RegistryError):
    """Computed digest does not match the expected one, or payload is corrupt."""

    error_type = "integrity_error"


class StoreError(RegistryError):
    """Object store failure after the retry budget was exhausted."""

    error_type = "store_error"


class KeyCollisionError(StoreError):
    """Different bytes submitted for a content-addressed key. Programming error."""

    error_type = "key_collision"


class ConflictError(RegistryError):
    """Optimistic concurrency precondition failed on commit."""

    error_type = "conflict"


class NotFoundError(RegistryError):
    error_type = "not_found"


class ObjectNotFoundError(NotFoundError):
    """No blob under the requested object key."""

    error_type = "not_found"

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class ValidationError(RegistryError):
    """Malformed request, e.g. missing required field."""

    error_type = "validation_error"


class InvalidSourceError(ValidationError):
    error_type = "invalid_source"

    def __init__(self, source: str):
        super().__init__(f"Invalid source: {source}")
        self.source = source


class UnsupportedSchemeError(ValidationError):
    error_type = "unsupported_scheme"

    def __init__(self, scheme: str):
        super().__init__(f"Unsupported scheme: '{scheme}'")
        self.scheme = scheme
