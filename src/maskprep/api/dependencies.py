"""Request dependencies: app state accessors and API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from maskprep.config import Settings
    from maskprep.ml.classifier import ImageClassifier
    from maskprep.ml.detector import MaskRCNNDetector
    from maskprep.ml.inference import InferencePool
    from maskprep.ml.model_manager import ModelManager
    from maskprep.ml.pipeline import InputPipeline

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def get_pipeline(request: Request) -> InputPipeline:
    pipeline: InputPipeline = request.app.state.pipeline
    return pipeline


def get_detector(request: Request) -> MaskRCNNDetector:
    detector: MaskRCNNDetector = request.app.state.detector
    return detector


def get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject requests without 'Authorization: Bearer <MASKPREP_API_KEY>'.

    Authentication is disabled when no key is configured.
    """
    expected = get_settings(request).api_key
    if expected is None:
        return

    presented = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
