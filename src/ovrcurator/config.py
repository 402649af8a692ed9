"""Environment-based configuration for OvR Curator."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from OVRCURATOR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OVRCURATOR_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Model files (None = use whatever is already under models_dir)
    models_dir: str = "models"
    models_repo: str | None = None
    ensemble_subdir: str = "ovr"
    tie_break_subdir: str = "ovo"

    # Preprocessing
    input_size: int = Field(default=224, ge=1)
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)
    inference_queue_timeout: float = Field(default=30.0, gt=0)

    # Dataset storage
    dataset_dir: str = "Dataset"
    pending_dir: str = "Unverified"
    confirmed_dir: str = "Verified"
    supported_extensions: tuple[str, ...] = ("jpg", "jpeg", "png")

    # Image source
    source_url: str = "https://api.thecatapi.com/v1/images/search"
    source_api_key: str | None = None
    source_page_size: int = Field(default=10, ge=1, le=100)
    http_timeout: float = Field(default=30.0, gt=0)

    # Curation run. Batch size is validated against min_batch_size when a run starts.
    total_count: int = Field(default=10, ge=1)
    batch_size: int = 10
    min_batch_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=3.0, ge=0)

    # Decision policy
    classification_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    negative_label: str = "rest"
    ambiguous_labels: dict[str, str] = Field(default_factory=lambda: {"mouth_open": "safe"})


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
