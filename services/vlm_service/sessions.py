"""
Session Manager — owns the three FastVLM ONNX graphs and the tokenizer.

Architecture decisions:
  1. A ModelBundle is all-or-nothing: the tokenizer and the vision
     encoder, token embedder and merged decoder graphs load together
     or ModelBundle.load() raises. close() drops every handle at once.
  2. Execution providers come from ONNX_PROVIDERS in priority order,
     filtered to what the installed onnxruntime offers, with
     CPUExecutionProvider as the fallback. Invoke operations do not
     care which provider won.
  3. IO names, dtypes and decoder geometry (layers, KV heads, head
     dim, hidden size) are read from graph metadata at load time.
     Symbolic dims fall back to the configured defaults.
  4. Each invoke operation validates its input shape/dtype and raises
     ShapeMismatch before anything reaches onnxruntime; runtime errors
     come back as BackendFailure.
  5. SessionManager keeps no per-call state. InferenceSession.run is
     safe to call from several threads, so concurrent images only need
     their own KVCacheState.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from tokenizers import Tokenizer

from configs.settings import Settings, get_settings
from services.vlm_service.errors import (
    BackendFailure,
    ModelLoadFailure,
    ModelNotFound,
    ShapeMismatch,
)
from services.vlm_service.kv_cache import PAST_PREFIX, PRESENT_PREFIX, KVCacheState
from utils.logger import get_logger
from utils.timing import timed

_log = get_logger(__name__)

# Well-known relative names guaranteed by the provisioning step.
MODEL_FILES: Dict[str, str] = {
    "tokenizer": "tokenizer.json",
    "vision": "vision_encoder.onnx",
    "embed": "embed_tokens.onnx",
    "decoder": "decoder_model_merged.onnx",
}

_PAST_KEY_RE = re.compile(rf"^{re.escape(PAST_PREFIX)}\.(\d+)\.key$")
_VISION_OUTPUT_NAMES = ("image_features", "last_hidden_state", "output")


# ── Model file discovery ───────────────────────────────────

def resolve_model_files(model_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Map each component to its file. Files may sit directly in
    model_dir or in an `onnx/` subdirectory (Hugging Face layout).
    """
    root = Path(model_dir)
    if not root.is_dir():
        raise ModelNotFound(f"model directory does not exist: {root}")

    resolved: Dict[str, Path] = {}
    missing: List[str] = []
    for component, filename in MODEL_FILES.items():
        for candidate in (root / filename, root / "onnx" / filename):
            if candidate.is_file():
                resolved[component] = candidate
                break
        else:
            missing.append(filename)

    if missing:
        raise ModelNotFound(f"missing model files in {root}: {', '.join(missing)}")
    return resolved


def select_providers(requested: Sequence[str], available: Sequence[str]) -> List[str]:
    """Keep requested providers that are installed, in order; CPU if none are."""
    providers = [p for p in requested if p in available]
    if not providers:
        _log.warning(
            "onnx_no_requested_providers_available",
            requested=list(requested),
            available=list(available),
            fallback="CPUExecutionProvider",
        )
        providers = ["CPUExecutionProvider"]
    return providers


def _onnx_type_to_dtype(type_str: str) -> Any:
    t = (type_str or "").lower()
    if "float16" in t:
        return np.float16
    if "int64" in t:
        return np.int64
    if "int32" in t:
        return np.int32
    if "bool" in t:
        return np.bool_
    return np.float32


def _static_dim(shape: Sequence[Any], index: int) -> Optional[int]:
    try:
        dim = shape[index]
    except (IndexError, TypeError):
        return None
    return dim if isinstance(dim, int) and dim > 0 else None


# ── Model bundle ───────────────────────────────────────────

@dataclass(frozen=True)
class DecoderGeometry:
    num_layers: int
    num_kv_heads: int
    head_dim: int
    hidden_size: int
    kv_dtype: Any
    embed_dtype: Any


class ModelBundle:
    """Three inference graphs plus tokenizer, loaded as one unit."""

    def __init__(
        self,
        vision_session: Any,
        embed_session: Any,
        decoder_session: Any,
        tokenizer: Tokenizer,
        *,
        settings: Optional[Settings] = None,
        providers: Optional[List[str]] = None,
    ) -> None:
        cfg = settings or get_settings()
        self._vision = vision_session
        self._embed = embed_session
        self._decoder = decoder_session
        self._tokenizer = tokenizer
        self._providers = providers or []
        self._wire_io_metadata(cfg)
        self._resolve_special_tokens(cfg)

    # ── Loading ─────────────────────────────────────────────

    @classmethod
    def load(cls, model_dir: Union[str, Path], settings: Optional[Settings] = None) -> "ModelBundle":
        """
        Load tokenizer and graphs from model_dir.

        Raises ModelNotFound if a file is absent, ModelLoadFailure if
        a file is present but unusable.
        """
        cfg = settings or get_settings()
        files = resolve_model_files(model_dir)

        try:
            import onnxruntime as ort
        except ImportError as exc:
            raise ModelLoadFailure(f"onnxruntime is required to load FastVLM graphs: {exc}") from exc

        with timed("tokenizer_load") as t:
            try:
                tokenizer = Tokenizer.from_file(str(files["tokenizer"]))
            except Exception as exc:
                raise ModelLoadFailure(f"cannot parse {files['tokenizer']}: {exc}") from exc
        _log.info("tokenizer_loaded", path=str(files["tokenizer"]), load_ms=round(t["ms"], 2))

        requested = [p.strip() for p in cfg.onnx_providers.split(",") if p.strip()]
        providers = select_providers(requested, ort.get_available_providers())
        _log.info("onnx_providers_selected", providers=providers)

        session_opts = ort.SessionOptions()
        session_opts.intra_op_num_threads = cfg.onnx_intra_op_threads
        session_opts.inter_op_num_threads = cfg.onnx_inter_op_threads
        if cfg.onnx_execution_mode == "parallel":
            session_opts.execution_mode = ort.ExecutionMode.ORT_PARALLEL
        else:
            session_opts.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
        session_opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        sessions = {}
        for component in ("vision", "embed", "decoder"):
            path = files[component]
            with timed(f"{component}_graph_load") as t:
                try:
                    sessions[component] = ort.InferenceSession(
                        str(path),
                        sess_options=session_opts,
                        providers=providers,
                    )
                except Exception as exc:
                    raise ModelLoadFailure(f"cannot load {path.name}: {exc}") from exc
            _log.info("onnx_graph_loaded", graph=path.name, load_ms=round(t["ms"], 2))

        return cls(
            sessions["vision"],
            sessions["embed"],
            sessions["decoder"],
            tokenizer,
            settings=cfg,
            providers=providers,
        )

    def _wire_io_metadata(self, cfg: Settings) -> None:
        try:
            vision_in = self._vision.get_inputs()[0]
            vision_outs = [o.name for o in self._vision.get_outputs()]
            embed_in = self._embed.get_inputs()[0]
            embed_outs = self._embed.get_outputs()
            decoder_ins = self._decoder.get_inputs()
            decoder_outs = [o.name for o in self._decoder.get_outputs()]
        except (AttributeError, IndexError) as exc:
            raise ModelLoadFailure(f"graph metadata is incomplete: {exc}") from exc
        if not vision_outs:
            raise ModelLoadFailure("vision encoder graph declares no outputs")
        if not embed_outs:
            raise ModelLoadFailure("embed_tokens graph declares no outputs")

        self.vision_input_name: str = vision_in.name
        self.vision_dtype = _onnx_type_to_dtype(vision_in.type)
        self.vision_output_name: str = next(
            (n for n in _VISION_OUTPUT_NAMES if n in vision_outs), vision_outs[0]
        )

        self.embed_input_name: str = embed_in.name
        embed_out_names = [o.name for o in embed_outs]
        self.embed_output_name: str = (
            "inputs_embeds" if "inputs_embeds" in embed_out_names else embed_out_names[0]
        )

        self.decoder_input_names: List[str] = [i.name for i in decoder_ins]
        self.decoder_input_dtypes: Dict[str, Any] = {
            i.name: _onnx_type_to_dtype(i.type) for i in decoder_ins
        }
        if "inputs_embeds" not in self.decoder_input_names:
            raise ModelLoadFailure("decoder graph has no inputs_embeds input")
        if "logits" not in decoder_outs:
            raise ModelLoadFailure("decoder graph has no logits output")

        past_keys = [i for i in decoder_ins if _PAST_KEY_RE.match(i.name)]
        num_layers = len(past_keys) or cfg.decoder_num_layers
        first_kv_shape = past_keys[0].shape if past_keys else []
        num_kv_heads = _static_dim(first_kv_shape, 1) or cfg.decoder_num_kv_heads
        head_dim = _static_dim(first_kv_shape, 3) or cfg.decoder_head_dim

        embeds_in = next(i for i in decoder_ins if i.name == "inputs_embeds")
        hidden_size = (
            _static_dim(getattr(embed_outs[0], "shape", []), 2)
            or _static_dim(embeds_in.shape, 2)
            or cfg.hidden_size
        )

        self.geometry = DecoderGeometry(
            num_layers=num_layers,
            num_kv_heads=num_kv_heads,
            head_dim=head_dim,
            hidden_size=hidden_size,
            kv_dtype=(
                self.decoder_input_dtypes[past_keys[0].name] if past_keys else np.float32
            ),
            embed_dtype=self.decoder_input_dtypes["inputs_embeds"],
        )

        self.decoder_output_names: List[str] = ["logits"] + [
            f"{PRESENT_PREFIX}.{i}.{kind}"
            for i in range(num_layers)
            for kind in ("key", "value")
        ]
        missing = [n for n in self.decoder_output_names if n not in decoder_outs]
        if missing:
            raise ModelLoadFailure(f"decoder graph is missing outputs: {', '.join(missing[:4])}")

        _log.info(
            "decoder_geometry",
            layers=num_layers,
            kv_heads=num_kv_heads,
            head_dim=head_dim,
            hidden=hidden_size,
            kv_dtype=np.dtype(self.geometry.kv_dtype).name,
        )

    def _resolve_special_tokens(self, cfg: Settings) -> None:
        self.eos_token_id = self._tokenizer.token_to_id(cfg.eos_token)
        self.image_token_id = self._tokenizer.token_to_id(cfg.image_token)
        if self.eos_token_id is None:
            raise ModelLoadFailure(f"tokenizer has no end-of-sequence token {cfg.eos_token!r}")
        if self.image_token_id is None:
            raise ModelLoadFailure(f"tokenizer has no image placeholder token {cfg.image_token!r}")
        self.vocab_size: int = self._tokenizer.get_vocab_size(with_added_tokens=True)

    # ── Handles ─────────────────────────────────────────────

    @property
    def is_loaded(self) -> bool:
        return self._decoder is not None

    @property
    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    @property
    def providers(self) -> List[str]:
        return list(self._providers)

    def session(self, graph: str) -> Any:
        return {"vision": self._vision, "embed": self._embed, "decoder": self._decoder}[graph]

    def close(self) -> None:
        """Release all three graphs in one step."""
        self._vision, self._embed, self._decoder = None, None, None
        _log.info("model_bundle_closed")


# ── Session manager ────────────────────────────────────────

class SessionManager:
    """Typed, validated invoke operations over a ModelBundle."""

    def __init__(self, bundle: ModelBundle, image_size: int) -> None:
        self._bundle = bundle
        self._image_size = image_size

    @property
    def bundle(self) -> ModelBundle:
        return self._bundle

    @property
    def geometry(self) -> DecoderGeometry:
        return self._bundle.geometry

    def empty_cache(self) -> KVCacheState:
        g = self._bundle.geometry
        return KVCacheState.empty(g.num_layers, g.num_kv_heads, g.head_dim, dtype=g.kv_dtype)

    def _run(self, graph: str, output_names: List[str], feed: Dict[str, np.ndarray]) -> List[np.ndarray]:
        session = self._bundle.session(graph)
        if session is None:
            raise BackendFailure(f"{graph} graph has been unloaded")
        try:
            return session.run(output_names, feed)
        except Exception as exc:
            raise BackendFailure(f"{graph} graph execution failed: {exc}") from exc

    # ── Vision encoder ──────────────────────────────────────

    def encode_vision(self, tensor: np.ndarray) -> np.ndarray:
        """(3, S, S) float image tensor -> (1, F, hidden) float32 features."""
        expected = (3, self._image_size, self._image_size)
        if not isinstance(tensor, np.ndarray) or tensor.shape != expected:
            raise ShapeMismatch(
                f"vision encoder expects {expected}, got {getattr(tensor, 'shape', type(tensor))}"
            )
        if not np.issubdtype(tensor.dtype, np.floating):
            raise ShapeMismatch(f"vision encoder expects floating point input, got {tensor.dtype}")

        pixel_values = tensor[np.newaxis, ...].astype(self._bundle.vision_dtype, copy=False)
        outputs = self._run(
            "vision",
            [self._bundle.vision_output_name],
            {self._bundle.vision_input_name: pixel_values},
        )
        features = np.asarray(outputs[0])
        if features.ndim == 2:
            features = features[np.newaxis, ...]
        if features.ndim != 3 or features.shape[0] != 1:
            raise ShapeMismatch(f"unexpected vision encoder output shape {features.shape}")
        if features.shape[2] != self.geometry.hidden_size:
            raise ShapeMismatch(
                f"image feature width {features.shape[2]} != hidden size {self.geometry.hidden_size}"
            )
        return features.astype(np.float32, copy=False)

    # ── Token embedder ──────────────────────────────────────

    def embed_tokens(self, token_ids: Union[Sequence[int], np.ndarray]) -> np.ndarray:
        """Token ids (N,) or (1, N) -> (1, N, hidden) float32 embeddings."""
        ids = np.asarray(token_ids)
        if ids.ndim == 1:
            ids = ids[np.newaxis, :]
        if ids.ndim != 2 or ids.shape[0] != 1 or ids.shape[1] == 0:
            raise ShapeMismatch(f"token embedder expects a non-empty (1, N) id array, got {ids.shape}")
        if ids.dtype.kind not in "iu":
            raise ShapeMismatch(f"token ids must be integers, got {ids.dtype}")

        outputs = self._run(
            "embed",
            [self._bundle.embed_output_name],
            {self._bundle.embed_input_name: ids.astype(np.int64, copy=False)},
        )
        embeds = np.asarray(outputs[0])
        if embeds.shape != (1, ids.shape[1], self.geometry.hidden_size):
            raise ShapeMismatch(f"unexpected token embedder output shape {embeds.shape}")
        return embeds.astype(np.float32, copy=False)

    # ── Fused decoder ───────────────────────────────────────

    def decode_step(
        self,
        embedding: np.ndarray,
        kv_cache: KVCacheState,
    ) -> Tuple[np.ndarray, KVCacheState]:
        """
        One decoder invocation.

        embedding: (1, S, hidden). The fused context on the first
        step, a single token embedding afterwards.
        Returns (logits (1, S, vocab), cache grown by S positions).
        """
        g = self.geometry
        if embedding.ndim != 3 or embedding.shape[0] != 1 or embedding.shape[1] == 0 or embedding.shape[2] != g.hidden_size:
            raise ShapeMismatch(
                f"decoder expects (1, S, {g.hidden_size}) embeddings, got {embedding.shape}"
            )
        if not np.issubdtype(embedding.dtype, np.floating):
            raise ShapeMismatch(f"decoder embeddings must be floating point, got {embedding.dtype}")
        self._validate_cache(kv_cache)

        past_len = kv_cache.length
        seq_len = embedding.shape[1]

        feed: Dict[str, np.ndarray] = {
            "inputs_embeds": embedding.astype(g.embed_dtype, copy=False),
        }
        names = self._bundle.decoder_input_names
        if "attention_mask" in names:
            feed["attention_mask"] = np.ones((1, past_len + seq_len), dtype=np.int64)
        if "position_ids" in names:
            feed["position_ids"] = np.arange(past_len, past_len + seq_len, dtype=np.int64)[np.newaxis, :]
        if "use_cache_branch" in names:
            feed["use_cache_branch"] = np.array([past_len > 0], dtype=np.bool_)
        for name, tensor in kv_cache.as_feed().items():
            feed[name] = tensor.astype(g.kv_dtype, copy=False)

        outputs = self._run("decoder", self._bundle.decoder_output_names, feed)
        logits = np.asarray(outputs[0])
        if logits.ndim != 3 or logits.shape[:2] != (1, seq_len):
            raise ShapeMismatch(f"unexpected decoder logits shape {logits.shape}")

        new_cache = KVCacheState.from_present(
            self._bundle.decoder_output_names, list(outputs), g.num_layers
        )
        return logits.astype(np.float32, copy=False), new_cache

    def _validate_cache(self, kv_cache: KVCacheState) -> None:
        g = self.geometry
        if kv_cache.num_layers != g.num_layers:
            raise ShapeMismatch(f"KV cache has {kv_cache.num_layers} layers, decoder has {g.num_layers}")
        length = kv_cache.length
        for i, (key, value) in enumerate(kv_cache.layers):
            expected = (1, g.num_kv_heads, length, g.head_dim)
            if key.shape != expected or value.shape != expected:
                raise ShapeMismatch(
                    f"KV cache layer {i} shapes {key.shape}/{value.shape}, expected {expected}"
                )
