"""
Error kinds raised by the training orchestrator and inference runtime.

Every error carries a stable ``kind`` tag and the HTTP status the API
layer answers with, so views can turn any of them into a structured
``{"kind", "message"}`` body without inspecting the type.
"""

from __future__ import annotations


class TrainingError(Exception):
    """Base class for all orchestrator errors."""

    kind: str = "TrainingError"
    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class ValidationError(TrainingError):
    kind = "ValidationError"
    status_code = 400


class Unauthenticated(TrainingError):
    kind = "Unauthenticated"
    status_code = 401


class DatasetNotFound(TrainingError):
    kind = "DatasetNotFound"
    status_code = 404


class DatasetNotReady(TrainingError):
    kind = "DatasetNotReady"
    status_code = 409


class JobNotFound(TrainingError):
    kind = "JobNotFound"
    status_code = 404


class ModelNotFound(TrainingError):
    kind = "ModelNotFound"
    status_code = 404


class EmptyDatasetError(TrainingError):
    kind = "EmptyDatasetError"
    status_code = 422


class DecodeError(TrainingError):
    """An image could not be decoded as JPEG or PNG."""

    kind = "DecodeError"
    status_code = 400

    def __init__(self, path: str, detail: str = "") -> None:
        self.path = path
        message = f"Could not decode image {path}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class Cancelled(TrainingError):
    kind = "Cancelled"
    status_code = 409


class ModelAlreadyRegistered(TrainingError):
    kind = "ModelAlreadyRegistered"
    status_code = 409


class Interrupted(TrainingError):
    kind = "Interrupted"
    status_code = 500


class JobSuperseded(TrainingError):
    """The job row went terminal while a worker still held it."""

    kind = "JobSuperseded"
    status_code = 409


class StoreWriteError(TrainingError):
    kind = "StoreWriteError"
    status_code = 500


class ArtifactLoadError(TrainingError):
    kind = "ArtifactLoadError"
    status_code = 500


class JobActive(TrainingError):
    """The job is still running and cannot be deleted."""

    kind = "JobActive"
    status_code = 409
