"""Exception hierarchy shared by the extraction and deployment pipelines.

Every error carries the HTTP status code it maps to, so routers can let them
propagate and the application-level handler renders ``{status, error}``.
"""

from typing import Any, Dict, Optional, Sequence


class PipelineError(Exception):
    """Base class for all errors surfaced to API clients."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        # Extra keys merged into the JSON error body
        self.payload: Dict[str, Any] = {}
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PipelineError):
    """Bad input the operator can fix (missing file, wrong format)."""

    status_code = 400


class UnsupportedFormatError(ValidationError):
    pass


class PayloadTooLargeError(ValidationError):
    status_code = 413


class ToolExecutionError(PipelineError):
    """An external utility exited non-zero, timed out, or flooded its output."""

    status_code = 500

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        return_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.command = list(command) if command else []
        self.return_code = return_code
        self.output = output


class EmptyResultError(PipelineError):
    """The archive extracted cleanly but yielded no members."""

    status_code = 500


class FilesystemError(PipelineError):
    """Creating, copying or removing files failed."""

    status_code = 500


class CopyFailedError(FilesystemError):
    pass


class NoExtractionFoundError(PipelineError):
    status_code = 400


class PipelineBusyError(PipelineError):
    """Another upload or deploy currently holds the pipeline lock."""

    status_code = 409
