"""Environment-based configuration for maskprep."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from maskprep.ml.anchors import AnchorConfig


class Settings(BaseSettings):
    """Application settings loaded from MASKPREP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MASKPREP_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Detector input geometry
    target_height: int = Field(default=800, ge=1)
    target_width: int = Field(default=800, ge=1)
    num_classes: int = Field(default=81, ge=0)
    normalization: str = "centered"
    anchor_mode: Literal["pyramid", "window"] = "pyramid"

    # Feature pyramid tables (validated by AnchorConfig)
    backbone_strides: list[int] = [4, 8, 16, 32, 64]
    anchor_scales: list[int] = [32, 64, 128, 256, 512]
    anchor_ratios: list[float] = [0.5, 1.0, 2.0]
    anchor_stride: int = 1

    # Model selection
    detector_model: str = "mask_rcnn_coco"
    classifier_model: str = "inception_v3"
    models_dir: str = "models"
    model_repo_id: str = "maskprep/maskprep-models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    eviction_interval: float = Field(default=60.0, gt=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    def anchor_config(self) -> AnchorConfig:
        """Build the validated pyramid tables.

        Raises:
            ConfigurationError: If strides, scales, or ratios are invalid.
        """
        return AnchorConfig(
            backbone_strides=tuple(self.backbone_strides),
            scales=tuple(self.anchor_scales),
            ratios=tuple(self.anchor_ratios),
            anchor_stride=self.anchor_stride,
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
