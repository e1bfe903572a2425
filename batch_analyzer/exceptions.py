"""
Error taxonomy for the analysis pipeline.

Batch-level errors carry the HTTP status and headline they map to; the
per-item collaborator errors never leave the orchestrator.
"""


class AnalyzerError(Exception):
    """Base class for errors raised by the analysis pipeline"""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str = None):
        super().__init__(message or self.error)


class UploadValidationError(AnalyzerError):
    """The upload was rejected before any analysis started"""

    status_code = 400
    error = "Invalid image upload"


class NoFilesProvided(UploadValidationError):
    error = 'No images provided. Send one or more files with field name "image".'


class InvalidMediaType(UploadValidationError):
    error = "Only image files are allowed"


class FileTooLarge(UploadValidationError):
    error = "File too large"


class TooManyFiles(UploadValidationError):
    error = "Too many files"


class MalformedMultipart(UploadValidationError):
    error = "Invalid image upload"


class UpstreamFormatError(AnalyzerError):
    """The collaborator answered, but not with usable structured data"""

    status_code = 502
    error = "Model returned invalid JSON"


class CollaboratorError(AnalyzerError):
    """Transport-level failure talking to the vision collaborator"""

    status_code = 502
    error = "Vision service request failed"

    def __init__(self, message: str = None, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable
