"""Inference runtime: backend initialization, artifact fetch, forward passes.

Wraps ONNX Runtime and the HuggingFace Hub behind the small ``ModelRuntime``
protocol the model loader consumes. Every call is blocking and is expected
to run on the inference thread pool.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from crabclassifier.ml.errors import BackendInitError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

    from crabclassifier.config import Settings

logger = logging.getLogger(__name__)


class ModelFormat(StrEnum):
    GRAPH = "graph"
    LAYERS = "layers"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelRuntime(Protocol):
    """Capabilities the model loader needs from an inference runtime."""

    def initialize(self) -> str:
        """Prepare the backend and return its identifier.

        Raises:
            BackendInitError: If no usable backend is available.
        """
        ...

    def fetch(self, source: str, fmt: ModelFormat) -> Any:
        """Fetch the artifact at ``source`` in ``fmt`` and return a loaded session."""
        ...

    def synthetic_input(self, shape: tuple[int, ...]) -> Any:
        """Context manager yielding a zero tensor of ``shape``, released on exit."""
        ...

    def run(self, session: Any, tensor: Any) -> Any:
        """Run a single forward pass."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxRuntimeBackend:
    """ONNX Runtime implementation, fetching artifacts from the HuggingFace Hub."""

    _LOAD_FORMAT = {ModelFormat.GRAPH: "ORT", ModelFormat.LAYERS: "ONNX"}

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._providers = self._build_providers()

    # -- Public API ---------------------------------------------------------

    def initialize(self) -> str:
        """Check that the preferred execution provider is available."""
        available = onnxruntime.get_available_providers()
        preferred = self._provider_name(self._providers[0])
        if preferred not in available:
            raise BackendInitError(
                f"Execution provider {preferred} is not available (available: {', '.join(available)})"
            )
        self._models_dir.mkdir(parents=True, exist_ok=True)
        logger.info("ONNX Runtime %s ready on %s", onnxruntime.__version__, preferred)
        return preferred

    def fetch(self, source: str, fmt: ModelFormat) -> InferenceSession:
        """Download the artifact for ``fmt`` and create an InferenceSession."""
        path = Path(
            hf_hub_download(
                repo_id=source,
                filename=self._filename(fmt),
                local_dir=str(self._models_dir),
            )
        )
        session = InferenceSession(
            str(path),
            sess_options=self._build_session_options(fmt),
            providers=self._providers,
        )
        logger.info("Loaded %s artifact from %s", fmt, path)
        return session

    @contextmanager
    def synthetic_input(self, shape: tuple[int, ...]) -> Iterator[NDArray[np.float32]]:
        tensor = np.zeros(shape, dtype=np.float32)
        try:
            yield tensor
        finally:
            del tensor
            logger.debug("Released synthetic input %s", shape)

    def run(self, session: InferenceSession, tensor: NDArray[np.float32]) -> list[Any]:
        input_name = session.get_inputs()[0].name
        return session.run(None, {input_name: tensor})

    # -- Internal -----------------------------------------------------------

    def _filename(self, fmt: ModelFormat) -> str:
        if fmt is ModelFormat.GRAPH:
            return self._settings.graph_filename
        return self._settings.layers_filename

    @staticmethod
    def _provider_name(provider: str | tuple[str, dict[str, object]]) -> str:
        return provider if isinstance(provider, str) else provider[0]

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self, fmt: ModelFormat) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        opts.add_session_config_entry("session.load_model_format", self._LOAD_FORMAT[fmt])

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
