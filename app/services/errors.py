"""Domain exceptions raised by the import and enrichment pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class InvalidTransition(PipelineError):
    """A state change that the entity's state machine does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")


class JobNotFound(PipelineError):
    """No import job with the requested id."""


class StorageError(PipelineError):
    """Blob storage read or write failed."""


class CheckpointDownloadError(PipelineError):
    """A checkpoint blob could not be downloaded after all attempts."""


class AuthenticationError(PipelineError):
    """Identity token missing or rejected. Never retried."""


class ExtractionError(PipelineError):
    """No JSON could be recovered from an AI response."""


class NoCompetitorSites(PipelineError):
    """A price search was requested but the user has no active competitor sites."""
