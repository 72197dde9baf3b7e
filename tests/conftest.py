"""
Shared fixtures — in-memory stand-ins for the three FastVLM graphs.

The fake graphs expose the onnxruntime surface the pipeline uses
(get_inputs / get_outputs / run) and encode just enough semantics
to check the plumbing:

  - token embedder: embedding[..., 0] = token id
  - vision encoder: FEATURES vectors with [..., 0] = -1 and
    [..., 1] = mean pixel value of the image tensor
  - decoder: appends the new embeddings to every layer's KV cache
    (marking step-0 positions in channel 2) and emits a scripted
    token sequence chosen by the brightest position in its cache.

The tokenizer is a real `tokenizers.Tokenizer` (WordLevel) built in
memory.
"""
import os
import sys
import threading
from collections import namedtuple
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from configs.settings import GenerationConfig, Settings
from services.vlm_service.pipeline import VisionLanguagePipeline
from services.vlm_service.sessions import ModelBundle, SessionManager

IMAGE_SIZE = 16
HIDDEN = 8
LAYERS = 2
KV_HEADS = 2
HEAD_DIM = HIDDEN
FEATURES = 4

VOCAB = {
    "<unk>": 0,
    "<|im_start|>": 1,
    "<|im_end|>": 2,
    "<image>": 3,
    "system": 4,
    "user": 5,
    "assistant": 6,
    "describe": 7,
    "this": 8,
    "image": 9,
    "briefly": 10,
    ".": 11,
    "a": 12,
    "bright": 13,
    "dark": 14,
    "scene": 15,
}
EOS_ID = VOCAB["<|im_end|>"]
IMAGE_ID = VOCAB["<image>"]
VOCAB_SIZE = len(VOCAB)

BRIGHT_SCRIPT = [VOCAB["a"], VOCAB["bright"], VOCAB["scene"]]
DARK_SCRIPT = [VOCAB["a"], VOCAB["dark"], VOCAB["scene"]]

NodeArg = namedtuple("NodeArg", ["name", "shape", "type"])


def build_tokenizer(specials: Sequence[str] = ("<|im_start|>", "<|im_end|>", "<image>")) -> Tokenizer:
    vocab = {k: v for k, v in VOCAB.items() if k not in ("<|im_start|>", "<|im_end|>", "<image>") or k in specials}
    tok = Tokenizer(WordLevel(vocab, unk_token="<unk>"))
    tok.pre_tokenizer = Whitespace()
    tok.add_special_tokens(list(specials))
    return tok


class FakeSession:
    """Minimal InferenceSession look-alike with a call counter."""

    def __init__(self, inputs: List[NodeArg], outputs: List[NodeArg], fn) -> None:
        self._inputs = inputs
        self._outputs = outputs
        self._fn = fn
        self._lock = threading.Lock()
        self.calls = 0

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def run(self, output_names, feed):
        with self._lock:
            self.calls += 1
        out = self._fn(feed)
        return [out[name] for name in output_names]


def _vision_fn(feed):
    pixels = feed["pixel_values"]
    if pixels.shape != (1, 3, IMAGE_SIZE, IMAGE_SIZE):
        raise ValueError(f"bad pixel_values {pixels.shape}")
    feats = np.zeros((1, FEATURES, HIDDEN), dtype=np.float32)
    feats[..., 0] = -1.0
    feats[..., 1] = float(pixels.mean())
    return {"image_features": feats}


def _embed_fn(feed):
    ids = feed["input_ids"]
    if ids.dtype != np.int64:
        raise ValueError("input_ids must be int64")
    out = np.zeros((1, ids.shape[1], HIDDEN), dtype=np.float32)
    out[..., 0] = ids
    return {"inputs_embeds": out}


class FakeDecoder:
    """Scripted merged decoder; see module docstring."""

    def __init__(
        self,
        bright: Sequence[int] = BRIGHT_SCRIPT,
        dark: Sequence[int] = DARK_SCRIPT,
        fail_at_call: Optional[int] = None,
        freeze_cache: bool = False,
        forced_token: Optional[int] = None,
    ) -> None:
        self.bright = list(bright)
        self.dark = list(dark)
        self.fail_at_call = fail_at_call
        self.freeze_cache = freeze_cache
        self.forced_token = forced_token
        self._calls = 0
        self._lock = threading.Lock()

    def __call__(self, feed: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        with self._lock:
            self._calls += 1
            call = self._calls
        if self.fail_at_call is not None and call >= self.fail_at_call:
            raise RuntimeError("simulated accelerator out of memory")

        embeds = feed["inputs_embeds"]
        seq = embeds.shape[1]
        past = feed["past_key_values.0.key"].shape[2]
        if feed["attention_mask"].shape != (1, past + seq):
            raise ValueError("attention_mask length does not cover past + new positions")
        if not np.array_equal(feed["position_ids"][0], np.arange(past, past + seq)):
            raise ValueError("position_ids do not continue the cache")

        new = np.broadcast_to(
            embeds[:, np.newaxis, :, :HEAD_DIM], (1, KV_HEADS, seq, HEAD_DIM)
        ).astype(np.float32).copy()
        if past == 0:
            new[..., 2] = 1.0

        out: Dict[str, np.ndarray] = {}
        for i in range(LAYERS):
            for kind in ("key", "value"):
                prev = feed[f"past_key_values.{i}.{kind}"]
                out[f"present.{i}.{kind}"] = prev.copy() if self.freeze_cache else np.concatenate([prev, new], axis=2)

        history = np.concatenate([feed["past_key_values.0.key"], new], axis=2)[0, 0]
        seed_len = int(history[:, 2].sum())
        generated = past + seq - seed_len if past > 0 else 0
        script = self.bright if history[:, 1].max() > 0.5 else self.dark
        token = script[generated] if generated < len(script) else EOS_ID
        if self.forced_token is not None:
            token = self.forced_token

        logits = np.zeros((1, seq, VOCAB_SIZE), dtype=np.float32)
        logits[0, -1, token] = 10.0
        out["logits"] = logits
        return out


def make_sessions(decoder_fn=None):
    vision = FakeSession(
        [NodeArg("pixel_values", [1, 3, IMAGE_SIZE, IMAGE_SIZE], "tensor(float)")],
        [NodeArg("image_features", [1, FEATURES, HIDDEN], "tensor(float)")],
        _vision_fn,
    )
    embed = FakeSession(
        [NodeArg("input_ids", ["batch_size", "sequence_length"], "tensor(int64)")],
        [NodeArg("inputs_embeds", ["batch_size", "sequence_length", HIDDEN], "tensor(float)")],
        _embed_fn,
    )
    decoder_inputs = [
        NodeArg("inputs_embeds", ["batch_size", "sequence_length", HIDDEN], "tensor(float)"),
        NodeArg("attention_mask", ["batch_size", "total_sequence_length"], "tensor(int64)"),
        NodeArg("position_ids", ["batch_size", "sequence_length"], "tensor(int64)"),
    ]
    decoder_outputs = [NodeArg("logits", ["batch_size", "sequence_length", VOCAB_SIZE], "tensor(float)")]
    for i in range(LAYERS):
        for kind in ("key", "value"):
            decoder_inputs.append(
                NodeArg(f"past_key_values.{i}.{kind}", ["batch_size", KV_HEADS, "past_sequence_length", HEAD_DIM], "tensor(float)")
            )
            decoder_outputs.append(
                NodeArg(f"present.{i}.{kind}", ["batch_size", KV_HEADS, "total_sequence_length", HEAD_DIM], "tensor(float)")
            )
    decoder = FakeSession(decoder_inputs, decoder_outputs, decoder_fn or FakeDecoder())
    return vision, embed, decoder


def solid_rgba(width: int, height: int, value: int) -> bytes:
    return bytes([value, value, value, 255]) * (width * height)


@pytest.fixture()
def settings():
    return Settings(
        image_size=IMAGE_SIZE,
        hidden_size=HIDDEN,
        decoder_num_layers=LAYERS,
        decoder_num_kv_heads=KV_HEADS,
        decoder_head_dim=HEAD_DIM,
        max_context_length=4096,
        batch_max_workers=1,
    )


@pytest.fixture()
def tokenizer():
    return build_tokenizer()


@pytest.fixture()
def fake_graphs():
    return make_sessions()


@pytest.fixture()
def bundle(settings, tokenizer, fake_graphs):
    vision, embed, decoder = fake_graphs
    return ModelBundle(vision, embed, decoder, tokenizer, settings=settings, providers=["CPUExecutionProvider"])


@pytest.fixture()
def sessions(bundle, settings):
    return SessionManager(bundle, image_size=settings.image_size)


@pytest.fixture()
def make_pipeline(settings, tokenizer):
    """Factory: pipeline initialized over fake graphs with a given decoder/config."""
    created = []

    def _make(decoder_fn=None, max_response_length: int = 10, default_prompt: str = "Describe this image briefly."):
        vision, embed, decoder = make_sessions(decoder_fn)
        bundle = ModelBundle(vision, embed, decoder, tokenizer, settings=settings)
        pipeline = VisionLanguagePipeline(settings)
        pipeline.initialize(
            config=GenerationConfig(max_response_length=max_response_length, default_prompt=default_prompt),
            bundle=bundle,
        )
        created.append(pipeline)
        pipeline.graphs = {"vision": vision, "embed": embed, "decoder": decoder}
        return pipeline

    yield _make
    for p in created:
        p.shutdown()


@pytest.fixture()
def pipeline(make_pipeline):
    return make_pipeline()
