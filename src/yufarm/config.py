"""Environment-based configuration for YuFarm."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from YUFARM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="YUFARM_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classifier artifact: a local file wins over the Hub download
    model_path: str | None = None
    model_repo_id: str = "yufarm/potato-leaf-classifier"
    model_filename: str = "potato_leaf_256.onnx"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (None = wait for a pool slot indefinitely)
    max_concurrent: int = Field(default=2, ge=1)
    inference_timeout: float | None = Field(default=None, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Sessions
    max_sessions: int = Field(default=256, ge=1)
    session_ttl: int = Field(default=1800, ge=0)  # seconds idle before eviction, 0 = never


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
