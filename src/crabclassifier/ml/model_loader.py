"""Model acquisition: backend init, dual-format fetch, warm-up, retry.

A ``ModelLoader`` owns the single model slot for a session. Each ``load()``
attempt walks through fixed progress checkpoints and ends either ``LOADED``
with a ``ModelHandle`` or ``FAILED`` with a human-readable error. Retrying is
always caller-initiated; the cap on how often a caller may retry lives in
``RetryPolicy`` so the loader itself stays uncapped.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from crabclassifier.ml.errors import (
    ArtifactFetchError,
    BackendInitError,
    LoadInProgressError,
    ModelLoadError,
    RetryExhaustedError,
    WarmupError,
)
from crabclassifier.ml.runtime import ModelFormat

if TYPE_CHECKING:
    from crabclassifier.ml.inference import InferencePool
    from crabclassifier.ml.runtime import ModelRuntime

logger = logging.getLogger(__name__)

WARMUP_SHAPE: tuple[int, int, int, int] = (1, 224, 224, 3)

PROGRESS_STARTED = 10
PROGRESS_BACKEND_READY = 30
PROGRESS_ARTIFACT_LOADED = 80
PROGRESS_DONE = 100

ProgressCallback = Callable[[int], None]
ReadyCallback = Callable[[], None]


class LoadState(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelHandle:
    """A loaded inference artifact. Held for the session, never mutated."""

    format: ModelFormat
    backend: str
    source: str
    session: Any


class ModelLoader:
    """Loads one classification model with progress and ready notifications."""

    def __init__(self, runtime: ModelRuntime, pool: InferencePool, source: str) -> None:
        self._runtime = runtime
        self._pool = pool
        self._source = source

        self._state = LoadState.IDLE
        self._progress = 0
        self._handle: ModelHandle | None = None
        self._error: ModelLoadError | None = None
        self._retry_count = 0

        self._progress_callbacks: list[ProgressCallback] = []
        self._ready_callbacks: list[ReadyCallback] = []

    # -- Accessors ----------------------------------------------------------

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def handle(self) -> ModelHandle | None:
        return self._handle

    @property
    def error(self) -> ModelLoadError | None:
        return self._error

    @property
    def error_message(self) -> str:
        return str(self._error) if self._error is not None else ""

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_ready(self) -> bool:
        return self._state is LoadState.LOADED

    # -- Subscriptions ------------------------------------------------------

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress listener. Returns a function that unsubscribes it."""
        self._progress_callbacks.append(callback)
        return lambda: self._progress_callbacks.remove(callback)

    def subscribe_ready(self, callback: ReadyCallback) -> Callable[[], None]:
        """Register a listener fired once per successful load."""
        self._ready_callbacks.append(callback)
        return lambda: self._ready_callbacks.remove(callback)

    # -- Operations ---------------------------------------------------------

    async def load(self) -> ModelHandle | None:
        """Run one load attempt.

        Returns the handle on success, ``None`` on failure (see ``error``).
        A model that is already loaded is returned as-is without events.

        Raises:
            LoadInProgressError: If another attempt is still running.
        """
        if self._state is LoadState.LOADING:
            raise LoadInProgressError("Model is already loading")
        if self._state is LoadState.LOADED:
            return self._handle

        self._state = LoadState.LOADING
        self._error = None
        self._set_progress(PROGRESS_STARTED)
        logger.info("Loading model from %s (retry %d)", self._source, self._retry_count)

        try:
            backend = await self._initialize_backend()
            self._set_progress(PROGRESS_BACKEND_READY)

            fmt, session = await self._fetch_artifact()
            self._set_progress(PROGRESS_ARTIFACT_LOADED)

            handle = ModelHandle(format=fmt, backend=backend, source=self._source, session=session)
            await self._warm_up(handle)
        except ModelLoadError as exc:
            self._fail(exc)
            return None
        except BaseException:
            self._fail(ModelLoadError("Model loading was interrupted"))
            raise

        self._handle = handle
        self._retry_count = 0
        self._set_progress(PROGRESS_DONE)
        self._state = LoadState.LOADED
        logger.info("Model ready (format=%s, backend=%s)", fmt, backend)
        self._notify_ready()
        return handle

    async def retry(self) -> ModelHandle | None:
        """Count a retry and repeat the whole load sequence."""
        if self._state is LoadState.LOADING:
            raise LoadInProgressError("Model is already loading")
        self._retry_count += 1
        logger.info("Retrying model load (attempt %d)", self._retry_count)
        return await self.load()

    # -- Internal -----------------------------------------------------------

    async def _initialize_backend(self) -> str:
        try:
            return await self._pool.run(self._runtime.initialize)
        except BackendInitError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendInitError(str(exc)) from exc

    async def _fetch_artifact(self) -> tuple[ModelFormat, Any]:
        # The graph format's error is the one reported when both fail.
        try:
            session = await self._pool.run(self._runtime.fetch, self._source, ModelFormat.GRAPH)
        except Exception as graph_exc:  # noqa: BLE001
            logger.warning("Graph artifact failed (%s), falling back to layers format", graph_exc)
            try:
                session = await self._pool.run(self._runtime.fetch, self._source, ModelFormat.LAYERS)
            except Exception as layers_exc:  # noqa: BLE001
                logger.warning("Layers artifact failed too: %s", layers_exc)
                raise ArtifactFetchError(graph_exc, layers_exc) from graph_exc
            return ModelFormat.LAYERS, session
        return ModelFormat.GRAPH, session

    async def _warm_up(self, handle: ModelHandle) -> None:
        try:
            await self._pool.run(self._run_warmup_pass, handle.session)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Warm-up failed, continuing: %s", exc)

    def _run_warmup_pass(self, session: Any) -> None:
        try:
            with self._runtime.synthetic_input(WARMUP_SHAPE) as tensor:
                self._runtime.run(session, tensor)
        except Exception as exc:
            raise WarmupError(str(exc)) from exc

    def _fail(self, exc: ModelLoadError) -> None:
        self._error = exc
        self._state = LoadState.FAILED
        self._set_progress(0)
        logger.error("Model loading failed: %s", exc)

    def _set_progress(self, value: int) -> None:
        self._progress = value
        for callback in list(self._progress_callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Progress listener raised")

    def _notify_ready(self) -> None:
        for callback in list(self._ready_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Ready listener raised")


class RetryPolicy:
    """Caps how many retries a caller is offered after failed loads."""

    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries

    def attempts_left(self, loader: ModelLoader) -> int:
        return max(0, self.max_retries - loader.retry_count)

    def can_retry(self, loader: ModelLoader) -> bool:
        return loader.state is LoadState.FAILED and self.attempts_left(loader) > 0

    async def retry(self, loader: ModelLoader) -> ModelHandle | None:
        """Retry through the policy.

        Raises:
            RetryExhaustedError: If the loader has not failed or no attempts are left.
        """
        if not self.can_retry(loader):
            raise RetryExhaustedError(
                f"Retry not available (state={loader.state}, retries used={loader.retry_count})"
            )
        return await loader.retry()
