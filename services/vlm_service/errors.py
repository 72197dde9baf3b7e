"""
Error taxonomy for the describe pipeline.

Initialization errors (ModelNotFound, ModelLoadFailure) are fatal to
the pipeline instance. Everything else aborts a single image; the
pipeline attaches the StageTimings captured up to the failure as
`exc.timings` before re-raising.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from services.vlm_service.instrumentation import StageTimings


class VLMError(Exception):
    """Base class for every pipeline error."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.timings: Optional["StageTimings"] = None

    @property
    def kind(self) -> str:
        return type(self).__name__


class PipelineNotReady(VLMError):
    """analyze*() called before initialize() or after shutdown()."""


class PipelineError(VLMError):
    """Lifecycle misuse, e.g. initializing an already-initialized pipeline."""


class ModelNotFound(VLMError):
    """A required model file is missing from the model directory."""


class ModelLoadFailure(VLMError):
    """A model file exists but could not be parsed or compiled."""


class InvalidImage(VLMError):
    """Zero dimensions, wrong buffer length, or an undecodable file."""


class ShapeMismatch(VLMError):
    """A tensor handed to a graph does not have the expected shape or dtype."""


class TokenizationFailure(VLMError):
    """Empty prompt, tokenizer error, or missing/duplicated image placeholder."""


class FusionLengthExceeded(VLMError):
    """Fused prompt+image sequence is longer than the decoder context."""


class BackendFailure(VLMError):
    """onnxruntime raised while executing a graph."""


class GenerationFailure(BackendFailure):
    """The decode loop ended in the BackendError state."""


class DetokenizationFailure(VLMError):
    """A generated id lies outside the tokenizer vocabulary."""
