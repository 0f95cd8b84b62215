"""Classifier session: wires the loader, engine, and uploaded image together.

The session is the caller the inference core relies on. It keeps at most one
uploaded image, clears the held result whenever that image changes or goes
away, and passes the loader's readiness flag into every classification.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from crabclassifier.ml.errors import ImageNotFoundError, LoadInProgressError, RetryExhaustedError
from crabclassifier.ml.image_classifier import InferenceEngine
from crabclassifier.ml.model_loader import LoadState, ModelHandle, ModelLoader, RetryPolicy
from crabclassifier.ml.preprocessing import ImageStore, UploadedImage, validate_image

if TYPE_CHECKING:
    from crabclassifier.config import Settings
    from crabclassifier.ml.image_classifier import ClassificationResult, ClassificationStrategy
    from crabclassifier.ml.inference import InferencePool
    from crabclassifier.ml.runtime import ModelRuntime

logger = logging.getLogger(__name__)


class ClassifierSession:
    """Single-user classification session."""

    def __init__(
        self,
        settings: Settings,
        runtime: ModelRuntime,
        pool: InferencePool,
        strategy: ClassificationStrategy | None = None,
    ) -> None:
        self._settings = settings
        self.loader = ModelLoader(runtime, pool, settings.model_repo)
        self.retry_policy = RetryPolicy(settings.max_load_retries)
        self.engine = InferenceEngine(
            strategy,
            delay_range=(settings.inference_delay_min, settings.inference_delay_max),
        )
        self.images = ImageStore()
        self._image: UploadedImage | None = None
        self._load_task: asyncio.Task[ModelHandle | None] | None = None

        self.loader.subscribe_ready(lambda: logger.info("Model ready for classification"))

    @property
    def image(self) -> UploadedImage | None:
        return self._image

    # -- Model --------------------------------------------------------------

    def start_load(self) -> None:
        """Kick off a load in the background.

        Raises:
            LoadInProgressError: If a load is already running.
        """
        self._ensure_idle()
        self._load_task = asyncio.create_task(self.loader.load())

    def start_retry(self) -> None:
        """Kick off a retry in the background, subject to the retry policy.

        Raises:
            LoadInProgressError: If a load is already running.
            RetryExhaustedError: If no retry is offered.
        """
        self._ensure_idle()
        if not self.retry_policy.can_retry(self.loader):
            raise RetryExhaustedError(
                f"No retry available ({self.retry_policy.attempts_left(self.loader)} attempts left)"
            )
        self._load_task = asyncio.create_task(self.retry_policy.retry(self.loader))

    async def wait_for_load(self) -> ModelHandle | None:
        """Wait for the background load, if any, and return its handle."""
        if self._load_task is not None:
            await self._load_task
        return self.loader.handle

    def _ensure_idle(self) -> None:
        if self.loader.state is LoadState.LOADING or (self._load_task is not None and not self._load_task.done()):
            raise LoadInProgressError("Model is already loading")

    # -- Image --------------------------------------------------------------

    def upload_image(self, data: bytes, content_type: str | None) -> UploadedImage:
        """Validate and store a new image, replacing the previous one."""
        validate_image(
            data,
            content_type,
            min_size=self._settings.min_image_size,
            max_size=self._settings.max_image_size,
        )
        self.remove_image()
        self._image = self.images.add(data, content_type or "")
        return self._image

    def remove_image(self) -> None:
        """Revoke the current image and clear any result derived from it."""
        if self._image is not None:
            self.images.revoke(self._image.ref)
            self._image = None
        self.engine.reset()

    def image_bytes(self) -> tuple[bytes, str]:
        if self._image is None:
            raise ImageNotFoundError("No image uploaded")
        return self.images.resolve(self._image.ref), self._image.content_type

    # -- Classification -----------------------------------------------------

    async def classify(self) -> ClassificationResult:
        ref = self._image.ref if self._image is not None else None
        return await self.engine.classify(ref, self.loader.is_ready)

    @property
    def result(self) -> ClassificationResult | None:
        return self.engine.result

    def reset(self) -> None:
        self.engine.reset()

    async def shutdown(self) -> None:
        self.engine.reset()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
