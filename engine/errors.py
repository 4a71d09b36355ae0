"""Exceptions raised by the video delivery pipeline."""


class PipelineError(Exception):
    """Base class for pipeline failures that map to an HTTP status."""

    status_code = 500


class InvalidRequest(PipelineError):
    """Raised when a video identifier or filename is missing or malformed."""

    status_code = 400


class ResolutionError(PipelineError):
    """Raised when the source resolver cannot produce a file or a stream URL."""


class TranscodeError(PipelineError):
    """Raised when the transcoding engine fails or produces no output."""


class InFlightConflict(PipelineError):
    """Raised when another producer already owns the identifier."""

    status_code = 202


class RangeUnsatisfiable(PipelineError):
    """Raised when a byte range falls outside the file or cannot be parsed."""

    status_code = 416


class ArtifactNotFound(PipelineError):
    """Raised when a requested artifact is absent from both directories."""

    status_code = 404
