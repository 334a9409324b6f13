"""Error taxonomy for the upload relay."""


class RelayError(Exception):
    """Base class for all upload relay errors."""

    def __init__(self, message: str, *, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(RelayError):
    """Raised when required settings are absent at startup."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing required environment variables: {', '.join(self.missing)}"
        )


class ClientInputError(RelayError):
    """Raised when a request lacks a required field."""


class LocalIOError(RelayError):
    """Raised when a staged local file cannot be written or removed."""


class UploadInProgressError(RelayError):
    """Raised when a transfer for the same key is still active."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"An upload for {key} is already in progress")


# -----------------------------------------------------------------------------
# Storage backend errors
# -----------------------------------------------------------------------------


class StorageError(RelayError):
    """Base class for failures reported by the object store."""

    def __init__(self, message: str, *, operation: str, code: str | None = None):
        super().__init__(message, details=message)
        self.operation = operation
        self.code = code


class TransientNetworkError(StorageError):
    """A failure likely to succeed on retry (network blip, throttling, 5xx)."""


class PermanentBackendError(StorageError):
    """A failure that retrying cannot fix (not found, access denied, bad request)."""


class ObjectNotFoundError(PermanentBackendError):
    """The requested object does not exist."""


class UploadNotFoundError(PermanentBackendError):
    """The multipart upload handle does not exist (completed or aborted)."""


class OperationExhausted(RelayError):
    """All retry attempts of an operation failed."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts",
            details=str(last_error),
        )


# -----------------------------------------------------------------------------
# URL issuing errors
# -----------------------------------------------------------------------------


class ObjectQueryFailed(RelayError):
    """The existence check before presigning could not be completed."""


class ObjectNotFound(ObjectQueryFailed):
    """The existence check found no object under the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found: {key}", details=f"No object stored under {key}")


class PresignFailed(RelayError):
    """Signed URL generation failed."""
