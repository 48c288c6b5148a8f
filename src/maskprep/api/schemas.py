"""Pydantic request/response schemas for the maskprep API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageMetaInfo(BaseModel):
    """Decoded fields of the input_image_meta vector."""

    image_id: int
    original_shape: list[int] = Field(description="Original (height, width, depth)")
    resized_shape: list[int] = Field(description="Resized (height, width, depth)")
    window: list[int] = Field(description="Valid region of the resized image as (y1, x1, y2, x2)")
    scale: float = Field(description="resized_height / original_height")
    num_classes: int


class PrepareResponse(BaseModel):
    """Shapes and metadata of the tensors prepared for the detector."""

    image_shape: list[int]
    meta: list[float] = Field(description="The full input_image_meta row")
    meta_info: ImageMetaInfo
    anchors_shape: list[int]
    anchor_mode: str


class FeatureLevelInfo(BaseModel):
    """One pyramid level and the anchors it contributes."""

    stride: int
    scale: int
    rows: int
    cols: int
    anchor_count: int


class AnchorsResponse(BaseModel):
    """Pyramid layout for an image size."""

    height: int
    width: int
    ratios: list[float]
    anchor_stride: int
    levels: list[FeatureLevelInfo]
    total: int
    first: list[list[float]] = Field(description="Leading anchors as (y1, x1, y2, x2)")


class OutputTensorInfo(BaseModel):
    """Name, shape, and dtype of one detector output tensor."""

    name: str
    shape: list[int]
    dtype: str


class DetectResponse(BaseModel):
    """Raw detector outputs summary."""

    model: str
    outputs: list[OutputTensorInfo]


class ImageTag(BaseModel):
    """A single classification tag with its score."""

    label: str
    score: float


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    model: str
    tags: list[ImageTag]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'detection' or 'classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    image_mode: str
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
