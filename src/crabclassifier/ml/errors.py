"""Exception hierarchy for model loading and classification."""

from __future__ import annotations


class CrabClassifierError(Exception):
    """Base class for all crab classifier errors."""


# -- Model acquisition -------------------------------------------------------


class ModelLoadError(CrabClassifierError):
    """A load attempt could not produce a usable model."""


class BackendInitError(ModelLoadError):
    """The inference runtime could not be initialized."""


class ArtifactFetchError(ModelLoadError):
    """Both artifact formats failed to load.

    The message is the primary (graph format) failure's message; the
    fallback failure is kept on ``fallback`` for diagnostics only.
    """

    def __init__(self, primary: BaseException, fallback: BaseException) -> None:
        super().__init__(str(primary))
        self.primary = primary
        self.fallback = fallback


class WarmupError(ModelLoadError):
    """The warm-up forward pass failed. Never fails a load."""


class LoadInProgressError(CrabClassifierError):
    """load() was called while another load is still running."""


class RetryExhaustedError(CrabClassifierError):
    """The retry affordance has been withdrawn."""


# -- Classification ----------------------------------------------------------


class NotReadyError(CrabClassifierError):
    """No image reference was given or the model is not loaded."""


class ClassificationError(CrabClassifierError):
    """Unexpected fault while producing a classification."""


class ClassificationSupersededError(CrabClassifierError):
    """A newer classify() call replaced this one before it finished."""


# -- Uploads -----------------------------------------------------------------


class InvalidImageError(CrabClassifierError):
    """The uploaded file is not an acceptable image."""


class ImageNotFoundError(CrabClassifierError):
    """The image reference is unknown or has been revoked."""
