"""Shared fixtures: an in-memory model runtime and settings factory."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import pytest

from crabclassifier.config import Settings
from crabclassifier.ml.errors import BackendInitError
from crabclassifier.ml.runtime import ModelFormat

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


class FakeRuntime:
    """Scriptable ModelRuntime double.

    Set ``init_error``, ``fetch_errors[fmt]`` or ``run_error`` to make the
    corresponding step fail.
    """

    def __init__(self) -> None:
        self.backend = "FakeExecutionProvider"
        self.init_error: Exception | None = None
        self.fetch_errors: dict[ModelFormat, Exception] = {}
        self.run_error: Exception | None = None
        self.fetched: list[ModelFormat] = []
        self.runs: list[tuple[Any, tuple[int, ...]]] = []
        self.live_inputs = 0
        self.released_inputs = 0

    def initialize(self) -> str:
        if self.init_error is not None:
            raise self.init_error
        return self.backend

    def fetch(self, source: str, fmt: ModelFormat) -> Any:
        self.fetched.append(fmt)
        error = self.fetch_errors.get(fmt)
        if error is not None:
            raise error
        return f"session:{source}:{fmt}"

    @contextmanager
    def synthetic_input(self, shape: tuple[int, ...]) -> Iterator[tuple[int, ...]]:
        self.live_inputs += 1
        try:
            yield shape
        finally:
            self.live_inputs -= 1
            self.released_inputs += 1

    def run(self, session: Any, tensor: Any) -> Any:
        self.runs.append((session, tensor))
        if self.run_error is not None:
            raise self.run_error
        return [[0.5, 0.5]]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/crabclassifier_test_models",
        "max_concurrent": 2,
        "autoload": False,
        "inference_delay_min": 0.0,
        "inference_delay_max": 0.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def failing_backend_runtime() -> FakeRuntime:
    fake = FakeRuntime()
    fake.init_error = BackendInitError("no execution provider")
    return fake
