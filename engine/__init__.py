from .errors import (
    ArtifactNotFound,
    InFlightConflict,
    InvalidRequest,
    PipelineError,
    RangeUnsatisfiable,
    ResolutionError,
    TranscodeError,
)
from .inflight import InFlightRegistry
from .paths import MediaArtifact, StorageLayout

__all__ = [
    "ArtifactNotFound",
    "InFlightConflict",
    "InFlightRegistry",
    "InvalidRequest",
    "MediaArtifact",
    "PipelineError",
    "RangeUnsatisfiable",
    "ResolutionError",
    "StorageLayout",
    "TranscodeError",
]
