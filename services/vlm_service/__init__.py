"""
VLM Service Package — FastVLM image description over ONNX Runtime.
"""

from services.vlm_service.errors import (
    BackendFailure,
    DetokenizationFailure,
    FusionLengthExceeded,
    GenerationFailure,
    InvalidImage,
    ModelLoadFailure,
    ModelNotFound,
    PipelineError,
    PipelineNotReady,
    ShapeMismatch,
    TokenizationFailure,
    VLMError,
)
from services.vlm_service.instrumentation import BatchReport, StageTimings
from services.vlm_service.pipeline import AnalysisResult, VisionLanguagePipeline, get_pipeline

__all__ = [
    "AnalysisResult",
    "BackendFailure",
    "BatchReport",
    "DetokenizationFailure",
    "FusionLengthExceeded",
    "GenerationFailure",
    "InvalidImage",
    "ModelLoadFailure",
    "ModelNotFound",
    "PipelineError",
    "PipelineNotReady",
    "ShapeMismatch",
    "StageTimings",
    "TokenizationFailure",
    "VLMError",
    "VisionLanguagePipeline",
    "get_pipeline",
]
