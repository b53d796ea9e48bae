"""Exceptions raised by the zip re-upload pipeline.

Every error that aborts an invocation derives from PipelineError so the
Lambda handler can turn it into a failure response. Per-file upload errors
are not raised past the upload stage; they are recorded as outcomes.
"""


class PipelineError(Exception):
    """Base class for invocation-level failures."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class InvalidRequestError(PipelineError):
    """The payload is missing archiveId/context or is not a JSON object."""


class ConfigurationError(PipelineError):
    """A required environment setting is missing or malformed."""


class NotFoundError(PipelineError):
    """The archive key does not exist in the bucket."""


class TransferError(PipelineError):
    """Downloading the archive or writing it to scratch storage failed."""


class CorruptArchiveError(PipelineError):
    """The staged file is not a readable zip archive."""


class ExtractionIOError(PipelineError):
    """Writing extracted files to the scratch directory failed."""
