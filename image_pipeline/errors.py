"""
Error kinds raised by the pipeline consumers.

Every error is surfaced to the invoking queue or topic by raising. The
`permanent` flag does not change redelivery behaviour, it only tells logs
and metrics whether a retry could ever succeed.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    permanent: bool = True

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key

    def log_extra(self) -> dict:
        return {"error_kind": type(self).__name__, "permanent": self.permanent, "object_key": self.key}


class MalformedKey(PipelineError):
    """The object key has no extractable file extension."""


class UnsupportedType(PipelineError):
    """The object key's extension is not in the image allow-list."""

    def __init__(self, message: str, key: Optional[str] = None, image_type: Optional[str] = None):
        super().__init__(message, key)
        self.image_type = image_type


class MalformedEvent(PipelineError):
    """A message envelope could not be decoded into events."""


class TransientFetchFailure(PipelineError):
    """An object-store or record-store call failed for an infrastructure reason."""

    permanent = False


class ObjectNotFound(PipelineError):
    """The object referenced by a Created event no longer exists."""


class RecordNotFound(PipelineError):
    """An update targeted a record that does not exist."""


class StorageWriteFailure(PipelineError):
    """A write against the record store failed after its precondition held."""
