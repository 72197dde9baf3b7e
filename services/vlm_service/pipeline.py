"""
FastVLM describe pipeline — the caller-facing surface.

Architecture decisions:
  1. One explicitly owned instance per model load: initialize() loads
     the ModelBundle once, shutdown() (or leaving a `with` block)
     releases it once. A shut-down instance cannot be re-initialized.
  2. Stages run strictly in sequence per image: preprocess ->
     vision_encode -> fusion -> generation (decode loop + detokenize).
     Each is wrapped in StageTimings; `total` spans all of them.
  3. Every VLMError raised for an image carries `exc.timings` with the
     stages completed (or partially completed) before it failed. Buffer
     validation runs before any stage starts, so a malformed buffer
     fails with an empty StageTimings.
  4. The per-image components are stateless after construction;
     analyze() takes one snapshot of them at entry, so concurrent
     calls share the graphs but never a KV cache or embedding buffer.
  5. analyze_batch() never stops on a failed image. With max_workers
     > 1 images run on a thread pool; the report is still assembled
     in submission order.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import httpx

from configs.settings import GenerationConfig, Settings, get_settings
from services.vlm_service.decoder import DecodeLoop, DecodePhase
from services.vlm_service.detokenizer import Detokenizer
from services.vlm_service.errors import (
    ModelNotFound,
    PipelineError,
    PipelineNotReady,
    VLMError,
)
from services.vlm_service.fusion import EmbeddingFusion
from services.vlm_service.instrumentation import BatchReport, StageTimings
from services.vlm_service.preprocessor import ImagePreprocessor, PixelBuffer, load_image_file
from services.vlm_service.provisioning import download_models, missing_model_files
from services.vlm_service.sessions import ModelBundle, SessionManager
from utils.logger import get_logger, image_context
from utils.metrics import metrics
from utils.timing import timed

_log = get_logger(__name__)

BatchInput = Union[str, Path, Tuple[str, Union[str, Path]]]


@dataclass(frozen=True)
class AnalysisResult:
    """Description of one image plus how long each stage took."""

    text: str
    timestamp: datetime
    processing_time_ms: float
    timings: StageTimings
    terminal_state: DecodePhase
    token_count: int

    @property
    def truncated(self) -> bool:
        return self.terminal_state is DecodePhase.LENGTH_EXCEEDED


@dataclass(frozen=True)
class _Components:
    config: GenerationConfig
    sessions: SessionManager
    preprocessor: ImagePreprocessor
    fusion: EmbeddingFusion
    decoder: DecodeLoop
    detokenizer: Detokenizer


class VisionLanguagePipeline:
    """
    Loads FastVLM once and describes images with it.

        with VisionLanguagePipeline() as vlm:
            vlm.initialize("data/fastvlm")
            print(vlm.analyze_file("cat.jpg").text)
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._cfg = settings or get_settings()
        self._lock = threading.Lock()
        self._bundle: Optional[ModelBundle] = None
        self._components: Optional[_Components] = None
        self._model_dir: Optional[str] = None
        self._init_ms: Optional[float] = None
        self._shut_down = False

    # ── Lifecycle ───────────────────────────────────────────

    def initialize(
        self,
        model_dir: Optional[Union[str, Path]] = None,
        config: Optional[GenerationConfig] = None,
        *,
        bundle: Optional[ModelBundle] = None,
        auto_download: Optional[bool] = None,
        download_client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Load the model bundle and build the stage components.

        `bundle` lets callers hand over an already-loaded ModelBundle;
        otherwise it is loaded from model_dir (default VLM_MODEL_DIR).
        With auto_download (default VLM_AUTO_DOWNLOAD) missing files
        are fetched into model_dir first.
        Raises ModelNotFound / ModelLoadFailure; on failure the
        pipeline stays not-ready.
        """
        if auto_download is None:
            auto_download = self._cfg.vlm_auto_download
        with self._lock:
            if self._shut_down:
                raise PipelineError("pipeline has been shut down; create a new instance")
            if self._components is not None:
                raise PipelineError("pipeline is already initialized")

            config = config or GenerationConfig.from_settings(self._cfg)
            model_dir = str(model_dir or self._cfg.vlm_model_dir)

            _log.info("pipeline_initializing", model_dir=model_dir)
            with timed("pipeline_initialize") as t:
                if bundle is None:
                    if auto_download:
                        self._fetch_missing(model_dir, download_client)
                    bundle = ModelBundle.load(model_dir, self._cfg)
                self._components = self._build_components(bundle, config)
            self._bundle = bundle
            self._model_dir = model_dir
            self._init_ms = t["ms"]

        _log.info(
            "pipeline_ready",
            model_dir=model_dir,
            providers=bundle.providers,
            max_response_length=config.max_response_length,
            init_ms=round(t["ms"], 2),
        )

    def _fetch_missing(self, model_dir: str, client: Optional[httpx.Client]) -> None:
        missing = missing_model_files(model_dir)
        if not missing:
            return
        _log.info("model_files_missing", model_dir=model_dir, files=missing)
        try:
            download_models(model_dir, client=client, settings=self._cfg)
        except (httpx.HTTPError, OSError) as exc:
            raise ModelNotFound(f"could not download model files into {model_dir}: {exc}") from exc

    def _build_components(self, bundle: ModelBundle, config: GenerationConfig) -> _Components:
        cfg = self._cfg
        sessions = SessionManager(bundle, image_size=cfg.image_size)
        return _Components(
            config=config,
            sessions=sessions,
            preprocessor=ImagePreprocessor(cfg.image_size, cfg.image_mean, cfg.image_std),
            fusion=EmbeddingFusion(
                sessions,
                default_prompt=config.default_prompt,
                system_prompt=cfg.system_prompt,
                max_context_length=cfg.max_context_length,
                image_token=cfg.image_token,
            ),
            decoder=DecodeLoop(
                sessions,
                max_response_length=config.max_response_length,
                eos_token_id=bundle.eos_token_id,
                image_token_id=bundle.image_token_id,
                vocab_size=bundle.vocab_size,
            ),
            detokenizer=Detokenizer(bundle.tokenizer, empty_response_text=cfg.empty_response_text),
        )

    @property
    def is_ready(self) -> bool:
        return self._components is not None

    @property
    def config(self) -> Optional[GenerationConfig]:
        components = self._components
        return components.config if components else None

    @property
    def model_dir(self) -> Optional[str]:
        return self._model_dir

    @property
    def init_ms(self) -> Optional[float]:
        return self._init_ms

    def shutdown(self) -> None:
        """Release the model bundle. Safe to call more than once."""
        with self._lock:
            self._shut_down = True
            self._components = None
            if self._bundle is not None:
                self._bundle.close()
                self._bundle = None
                _log.info("pipeline_shutdown", model_dir=self._model_dir)

    def __enter__(self) -> "VisionLanguagePipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _require_ready(self) -> _Components:
        components = self._components
        if components is None:
            raise PipelineNotReady("pipeline is not initialized; call initialize() first")
        return components

    # ── Single image ────────────────────────────────────────

    def analyze(
        self,
        pixels: PixelBuffer,
        width: int,
        height: int,
        prompt: Optional[str] = None,
    ) -> AnalysisResult:
        """Describe one RGBA8 image of width x height pixels."""
        c = self._require_ready()

        timings = StageTimings()
        try:
            ImagePreprocessor.validate(pixels, width, height)
            with timings.stage("total"):
                with timings.stage("preprocess"):
                    tensor = c.preprocessor.preprocess(pixels, width, height)
                with timings.stage("vision_encode"):
                    features = c.sessions.encode_vision(tensor)
                with timings.stage("fusion"):
                    context = c.fusion.fuse_features(features, prompt)
                with timings.stage("generation"):
                    outcome = c.decoder.run(context.embeddings)
                    text = c.detokenizer.decode(outcome.token_ids, context.prompt)
        except VLMError as exc:
            exc.timings = timings
            metrics.increment("images_failed")
            _log.warning(
                "image_analysis_failed",
                error_kind=exc.kind,
                error=str(exc),
                timings=timings.as_dict(),
            )
            raise

        metrics.increment("images_ok")
        result = AnalysisResult(
            text=text,
            timestamp=datetime.now(timezone.utc),
            processing_time_ms=timings.total_ms,
            timings=timings,
            terminal_state=outcome.terminal_state,
            token_count=len(outcome.token_ids),
        )
        _log.info(
            "image_analyzed",
            width=width,
            height=height,
            tokens=result.token_count,
            terminal=outcome.terminal_state.value,
            timings=timings.as_dict(),
            text=text,
        )
        return result

    def analyze_file(self, path: Union[str, Path], prompt: Optional[str] = None) -> AnalysisResult:
        """Decode an image file (PNG/JPEG/WebP/...) and describe it."""
        self._require_ready()
        pixels, width, height = load_image_file(str(path))
        return self.analyze(pixels, width, height, prompt)

    # ── Batch ───────────────────────────────────────────────

    def analyze_batch(
        self,
        items: Iterable[BatchInput],
        prompt: Optional[str] = None,
        max_workers: Optional[int] = None,
    ) -> BatchReport:
        """
        Describe many image files. Items are paths or (identifier, path)
        pairs. Failures are recorded per item; the batch always
        completes.
        """
        self._require_ready()
        jobs: List[Tuple[str, str]] = []
        for item in items:
            if isinstance(item, tuple):
                identifier, path = item
                jobs.append((str(identifier), str(path)))
            else:
                jobs.append((str(item), str(item)))

        workers = max_workers or self._cfg.batch_max_workers
        report = BatchReport(init_ms=self._init_ms)
        _log.info("batch_started", images=len(jobs), workers=workers)

        with timed("batch", log=False) as wall:
            if workers <= 1 or len(jobs) <= 1:
                outcomes = [self._run_one(identifier, path, prompt) for identifier, path in jobs]
            else:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vlm") as pool:
                    futures = [pool.submit(self._run_one, identifier, path, prompt) for identifier, path in jobs]
                    outcomes = [f.result() for f in futures]

        for identifier, duration_ms, result, error, timings in outcomes:
            report.add(identifier, duration_ms, result=result, error=error, timings=timings)
        report.wall_ms = wall["ms"]

        _log.info(
            "batch_finished",
            total=report.total,
            successes=report.successes,
            failures=report.failures,
            wall_ms=round(report.wall_ms, 2),
        )
        return report

    def _run_one(self, identifier: str, path: str, prompt: Optional[str]):
        start = time.perf_counter_ns()
        with image_context(image=identifier):
            try:
                result = self.analyze_file(path, prompt)
                return identifier, result.processing_time_ms, result, None, result.timings
            except Exception as exc:
                elapsed_ms = (time.perf_counter_ns() - start) / 1_000_000
                timings = getattr(exc, "timings", None)
                duration = timings.total_ms if timings else elapsed_ms
                if not isinstance(exc, VLMError):
                    _log.exception("image_analysis_crashed", error=str(exc))
                return identifier, duration, None, exc, timings


# ── Module-level singleton ──────────────────────────────────

_pipeline_instance: Optional[VisionLanguagePipeline] = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> VisionLanguagePipeline:
    """
    Get or create the process-wide pipeline. It still has to be
    initialized by the application shell before use.
    """
    global _pipeline_instance
    if _pipeline_instance is not None:
        return _pipeline_instance
    with _pipeline_lock:
        if _pipeline_instance is None:
            _pipeline_instance = VisionLanguagePipeline()
        return _pipeline_instance
