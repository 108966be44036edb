"""Error taxonomy for the summary loader.

A missing summary is not an error: the loader returns ``None`` and the HTTP
layer turns that into a 404. Everything below is a failure of a single
request. Store-level failures are retryable by the caller; the loader itself
never retries.
"""


class IPSError(Exception):
    """Base class for all loader errors."""

    retryable = False


class MalformedRecord(IPSError):
    """A stored record is missing a field its schema guarantees."""

    def __init__(self, message: str, *, kind: str = "", field: str = "", index: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.field = field
        self.index = index


class ConstraintViolation(IPSError):
    """A write broke a schema constraint, e.g. a duplicate package id."""


class StoreError(IPSError):
    """The backing store could not answer the request."""

    retryable = True


class StoreUnavailable(StoreError):
    """Connectivity or driver failure."""


class StoreTimeout(StoreError):
    """Pool acquisition or statement timed out."""


class PartialFetchFailure(StoreError):
    """One or more child fan-out queries failed while assembling a summary."""

    def __init__(self, package_id: str, failed: list[str]):
        super().__init__(
            f"Failed to fetch {', '.join(failed)} for package {package_id}"
        )
        self.package_id = package_id
        self.failed = failed
