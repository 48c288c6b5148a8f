"""API route definitions."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

import numpy as np
from fastapi import APIRouter, Depends, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from maskprep.api.dependencies import (
    get_classifier,
    get_detector,
    get_inference_pool,
    get_model_manager,
    get_pipeline,
    get_settings,
    verify_api_key,
)
from maskprep.api.schemas import (
    AnchorsResponse,
    ClassifyImageResponse,
    DetectResponse,
    ErrorResponse,
    FeatureLevelInfo,
    HealthResponse,
    ImageMetaInfo,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    OutputTensorInfo,
    PrepareResponse,
)
from maskprep.ml.anchors import feature_levels, leading_anchors
from maskprep.ml.composer import parse_image_meta
from maskprep.ml.errors import ConstructionError, EngineResultError
from maskprep.ml.geometry import Bounds
from maskprep.ml.model_manager import MODEL_REGISTRY
from maskprep.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from maskprep.ml.pipeline import DetectorInputs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_IMAGE_ERRORS = {
    HTTPStatus.REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    HTTPStatus.UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    HTTPStatus.SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


async def _read_upload(request: Request, file: UploadFile) -> bytes | JSONResponse:
    settings = get_settings(request)
    data = await file.read()
    if len(data) > settings.max_file_size:
        return _error(
            HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            f"File is {len(data)} bytes, limit is {settings.max_file_size}",
        )
    return data


@router.post(
    "/prepare",
    response_model=PrepareResponse,
    responses=_IMAGE_ERRORS,
    summary="Prepare detector input tensors for an image",
)
async def prepare(request: Request, file: UploadFile, image_id: int = 0) -> PrepareResponse | JSONResponse:
    """Decode an image and build its pixel tensor, metadata vector, and anchors."""
    data = await _read_upload(request, file)
    if isinstance(data, JSONResponse):
        return data

    settings = get_settings(request)
    pipeline = get_pipeline(request)

    def _prepare() -> DetectorInputs:
        image = decode_image(data, max_pixels=settings.max_image_pixels)
        return pipeline.prepare(image, image_id=image_id)

    try:
        inputs = await get_inference_pool(request).run(_prepare)
    except ConstructionError as exc:
        return _error(HTTPStatus.UNPROCESSABLE_ENTITY, str(exc))
    except TimeoutError:
        return _error(HTTPStatus.SERVICE_UNAVAILABLE, "Server busy, try again later")

    meta = parse_image_meta(inputs.image_meta)
    return PrepareResponse(
        image_shape=list(inputs.image.shape),
        meta=inputs.image_meta[0].tolist(),
        meta_info=ImageMetaInfo(
            image_id=meta.image_id,
            original_shape=list(meta.original_shape),
            resized_shape=list(meta.resized_shape),
            window=list(meta.window),
            scale=meta.scale,
            num_classes=len(meta.active_class_ids),
        ),
        anchors_shape=list(inputs.anchors.shape),
        anchor_mode=pipeline.anchor_mode,
    )


@router.get(
    "/anchors",
    response_model=AnchorsResponse,
    summary="Describe the anchor pyramid for an image size",
)
async def anchors(
    request: Request,
    height: int = Query(default=800, ge=1, le=4096),
    width: int = Query(default=800, ge=1, le=4096),
    first: int = Query(default=3, ge=0, le=100),
) -> AnchorsResponse:
    """Return per-level feature shapes, anchor counts, and the leading anchors."""
    config = get_pipeline(request).anchor_config
    bounds = Bounds(0, 0, width, height)

    levels = feature_levels(bounds, config)
    level_infos = [
        FeatureLevelInfo(
            stride=level.stride,
            scale=level.scale,
            rows=level.rows,
            cols=level.cols,
            anchor_count=level.anchor_count(len(config.ratios), config.anchor_stride),
        )
        for level in levels
    ]
    boxes = await get_inference_pool(request).run(leading_anchors, bounds, config, first)

    return AnchorsResponse(
        height=height,
        width=width,
        ratios=list(config.ratios),
        anchor_stride=config.anchor_stride,
        levels=level_infos,
        total=sum(info.anchor_count for info in level_infos),
        first=boxes.tolist(),
    )


@router.post(
    "/detect",
    response_model=DetectResponse,
    responses={**_IMAGE_ERRORS, HTTPStatus.BAD_GATEWAY: {"model": ErrorResponse}},
    summary="Run the detector on an image",
)
async def detect(request: Request, file: UploadFile) -> DetectResponse | JSONResponse:
    """Run the Mask R-CNN graph and summarise its named outputs."""
    data = await _read_upload(request, file)
    if isinstance(data, JSONResponse):
        return data

    settings = get_settings(request)
    detector = get_detector(request)

    def _detect() -> dict[str, np.ndarray]:
        image = decode_image(data, max_pixels=settings.max_image_pixels)
        return detector.detect(image).outputs

    try:
        outputs = await get_inference_pool(request).run(_detect)
    except ConstructionError as exc:
        return _error(HTTPStatus.UNPROCESSABLE_ENTITY, str(exc))
    except EngineResultError as exc:
        logger.error("Detector %s returned an unusable result: %s", detector.model_name, exc)
        return _error(HTTPStatus.BAD_GATEWAY, str(exc))
    except TimeoutError:
        return _error(HTTPStatus.SERVICE_UNAVAILABLE, "Server busy, try again later")

    return DetectResponse(
        model=detector.model_name,
        outputs=[
            OutputTensorInfo(name=name, shape=list(np.shape(value)), dtype=str(np.asarray(value).dtype))
            for name, value in outputs.items()
        ],
    )


@router.post(
    "/classify",
    response_model=ClassifyImageResponse,
    responses={**_IMAGE_ERRORS, HTTPStatus.BAD_GATEWAY: {"model": ErrorResponse}},
    summary="Classify an image with tags",
)
async def classify(
    request: Request,
    file: UploadFile,
    top: int = Query(default=5, ge=1, le=100),
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    data = await _read_upload(request, file)
    if isinstance(data, JSONResponse):
        return data

    settings = get_settings(request)
    classifier = get_classifier(request)

    def _classify() -> list[ImageTag]:
        image = decode_image(data, max_pixels=settings.max_image_pixels)
        best = classifier.classify(image).best(top)
        return [ImageTag(label=p.label, score=p.score) for p in best]

    try:
        tags = await get_inference_pool(request).run(_classify)
    except ConstructionError as exc:
        return _error(HTTPStatus.UNPROCESSABLE_ENTITY, str(exc))
    except EngineResultError as exc:
        logger.error("Classifier %s returned an unusable result: %s", classifier.model_name, exc)
        return _error(HTTPStatus.BAD_GATEWAY, str(exc))
    except TimeoutError:
        return _error(HTTPStatus.SERVICE_UNAVAILABLE, "Server busy, try again later")

    return ClassifyImageResponse(model=classifier.model_name, tags=tags)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registry models and whether the current configuration uses them."""
    settings = get_settings(request)
    active_models = {settings.detector_model, settings.classifier_model}

    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=str(spec.task),
                status="active" if spec.name in active_models else "available",
                image_mode=spec.image_mode,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
