"""
Centralized configuration — loaded once at process startup.

  - Every component reads the same env vars (or `.env`).
  - Pydantic validates types at import time so bad config fails fast.
  - Per-pipeline generation knobs live in GenerationConfig, which is
    frozen once handed to VisionLanguagePipeline.initialize().
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Immutable, validated application settings from environment."""

    # ── Model files ─────────────────────────────────────────
    vlm_model_dir: str = Field(default="./data/fastvlm", description="Directory holding the ONNX graphs and tokenizer")
    vlm_model_base_url: str = Field(
        default="https://huggingface.co/onnx-community/FastVLM-0.5B-ONNX/resolve/main",
        description="Where scripts.download_models fetches the model files from",
    )
    vlm_auto_download: bool = Field(default=False, description="Fetch missing model files during pipeline initialize()")
    download_timeout_seconds: float = Field(default=60.0)
    download_chunk_size: int = Field(default=1 << 20)

    # ── Generation defaults ─────────────────────────────────
    max_response_length: int = Field(default=30, ge=1, description="Max generated tokens per image")
    default_prompt: str = Field(default="Describe this image briefly.")
    system_prompt: str = Field(default="You are a helpful vision assistant that describes images accurately.")
    empty_response_text: str = Field(default="No response generated.")

    # ── Image preprocessing ─────────────────────────────────
    image_size: int = Field(default=1024, ge=1, description="Square input resolution of the vision encoder")
    image_mean: List[float] = Field(default=[0.0, 0.0, 0.0])
    image_std: List[float] = Field(default=[1.0, 1.0, 1.0])

    # ── Decoder geometry (used when graph metadata is symbolic) ─
    decoder_num_layers: int = Field(default=24)
    decoder_num_kv_heads: int = Field(default=2)
    decoder_head_dim: int = Field(default=64)
    hidden_size: int = Field(default=896)
    max_context_length: int = Field(default=32768, description="Decoder max positions")

    # ── Special tokens ──────────────────────────────────────
    eos_token: str = Field(default="<|im_end|>")
    image_token: str = Field(default="<image>")

    # ── ONNX Runtime ───────────────────────────────────────
    onnx_providers: str = Field(
        default="CUDAExecutionProvider,CoreMLExecutionProvider,CPUExecutionProvider",
        description="Comma-separated ONNX execution providers in priority order",
    )
    onnx_intra_op_threads: int = Field(default=4, description="Threads for intra-operator parallelism")
    onnx_inter_op_threads: int = Field(default=1, description="Threads for inter-operator parallelism")
    onnx_execution_mode: str = Field(default="sequential", description="ORT execution mode: parallel or sequential")

    # ── Batch processing ────────────────────────────────────
    batch_max_workers: int = Field(default=1, ge=1, description="Images processed concurrently in analyze_batch")

    # ── Logging ─────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


class GenerationConfig(BaseModel):
    """Per-pipeline generation settings. Frozen after construction."""

    model_config = ConfigDict(frozen=True)

    max_response_length: int = Field(default=30, ge=1)
    default_prompt: str = Field(default="Describe this image briefly.", min_length=1)

    @field_validator("default_prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("default_prompt must contain non-whitespace text")
        return value

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "GenerationConfig":
        cfg = cfg or get_settings()
        return cls(
            max_response_length=cfg.max_response_length,
            default_prompt=cfg.default_prompt,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Singleton accessor — parsed once and cached for the process lifetime.
        from configs.settings import get_settings
        cfg = get_settings()
    """
    return Settings()
