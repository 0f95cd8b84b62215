"""Environment-based configuration for the crab classifier."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CRABCLASSIFIER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CRABCLASSIFIER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifact
    model_repo: str = "crab-lab/crab-gender-classifier"
    graph_filename: str = "crab_classifier.ort"
    layers_filename: str = "crab_classifier.onnx"
    models_dir: str = "models"
    autoload: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Retry affordance
    max_load_retries: int = Field(default=3, ge=0)

    # Simulated inference latency (seconds)
    inference_delay_min: float = Field(default=1.5, ge=0.0)
    inference_delay_max: float = Field(default=2.5, ge=0.0)

    # Upload limits (bytes)
    min_image_size: int = Field(default=1024, ge=0)
    max_image_size: int = Field(default=10 * 1024 * 1024, ge=1)

    @model_validator(mode="after")
    def _check_ranges(self) -> Settings:
        if self.inference_delay_min > self.inference_delay_max:
            raise ValueError("inference_delay_min must not exceed inference_delay_max")
        if self.min_image_size > self.max_image_size:
            raise ValueError("min_image_size must not exceed max_image_size")
        return self


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
