"""Crab gender classification.

``InferenceEngine`` gates classification on readiness, adds the simulated
inference latency, and owns the single result slot. How a label and
confidence are produced is delegated to a ``ClassificationStrategy``; the
default ``MockTableStrategy`` draws from a fixed table with jitter. The
loaded model handle is not consulted here, so a real-model strategy can be
swapped in without touching callers.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from crabclassifier.ml.errors import (
    ClassificationError,
    ClassificationSupersededError,
    NotReadyError,
)

logger = logging.getLogger(__name__)


class CrabGender(StrEnum):
    MALE = "Male"
    FEMALE = "Female"


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: CrabGender
    confidence: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 100.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @property
    def alternative_label(self) -> CrabGender:
        return CrabGender.FEMALE if self.label is CrabGender.MALE else CrabGender.MALE

    @property
    def alternative_confidence(self) -> float:
        return round(100.0 - self.confidence, 1)

    @property
    def confidence_level(self) -> str:
        if self.confidence >= 90:
            return "Very High"
        if self.confidence >= 75:
            return "High"
        if self.confidence >= 60:
            return "Moderate"
        return "Low"


class ClassificationStrategy(Protocol):
    """Produces a result for an image reference."""

    def predict(self, image_ref: str) -> ClassificationResult:
        """Classify the image behind ``image_ref``.

        Implementations must return a confidence in [0, 100] rounded to one
        decimal place.
        """
        ...


PREDICTION_TABLE: tuple[tuple[CrabGender, float], ...] = (
    (CrabGender.MALE, 94.7),
    (CrabGender.FEMALE, 87.3),
    (CrabGender.MALE, 92.1),
    (CrabGender.FEMALE, 89.6),
    (CrabGender.MALE, 76.8),
    (CrabGender.FEMALE, 83.4),
)

JITTER = 5.0
MIN_CONFIDENCE = 60.0
MAX_CONFIDENCE = 99.0


class MockTableStrategy:
    """Stand-in for a real model: table lookup plus uniform jitter."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def predict(self, image_ref: str) -> ClassificationResult:
        label, base = PREDICTION_TABLE[self._rng.randrange(len(PREDICTION_TABLE))]
        jittered = base + self._rng.uniform(-JITTER, JITTER)
        confidence = max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, jittered))
        return ClassificationResult(label=label, confidence=round(confidence, 1))


class InferenceEngine:
    """Runs classifications and holds the latest result."""

    def __init__(
        self,
        strategy: ClassificationStrategy | None = None,
        delay_range: tuple[float, float] = (1.5, 2.5),
        rng: random.Random | None = None,
    ) -> None:
        self._strategy = strategy or MockTableStrategy(rng)
        self._delay_range = delay_range
        self._rng = rng or random.Random()
        self._result: ClassificationResult | None = None
        self._pending: asyncio.Task[ClassificationResult] | None = None

    @property
    def result(self) -> ClassificationResult | None:
        return self._result

    @property
    def is_classifying(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def classify(self, image_ref: str | None, model_ready: bool) -> ClassificationResult:
        """Classify an image, replacing the held result.

        The most recently started call wins: a call still in flight when a
        new one starts is cancelled.

        Raises:
            NotReadyError: If no image reference is given or the model is not ready.
            ClassificationSupersededError: If a newer call replaced this one.
            ClassificationError: If the strategy fails; the held result is cleared.
        """
        if not image_ref or not model_ready:
            raise NotReadyError("Upload an image and wait for the model to load")

        self._cancel_pending()
        task = asyncio.ensure_future(self._run(image_ref))
        self._pending = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task is not self._pending and not (current and current.cancelling()):
                raise ClassificationSupersededError("Classification was superseded or reset") from None
            raise
        finally:
            if self._pending is task:
                self._pending = None

    def reset(self) -> None:
        """Clear the held result and drop any classification in flight."""
        self._cancel_pending()
        self._pending = None
        self._result = None

    # -- Internal -----------------------------------------------------------

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            logger.debug("Cancelling stale classification")
            self._pending.cancel()

    async def _run(self, image_ref: str) -> ClassificationResult:
        logger.info("Classifying %s", image_ref)
        await asyncio.sleep(self._rng.uniform(*self._delay_range))
        try:
            result = self._strategy.predict(image_ref)
        except Exception as exc:
            logger.exception("Classification failed for %s", image_ref)
            self._result = None
            raise ClassificationError("Unable to process the image") from exc

        self._result = result
        logger.info("Predicted %s (%.1f%% confidence)", result.label, result.confidence)
        return result
