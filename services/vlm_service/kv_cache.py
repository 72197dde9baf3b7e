"""
KVCacheState — the decoder's attention key/value history.

One instance per in-flight generation. It is an immutable value:
SessionManager.decode_step() returns a new state built from the
decoder's `present.*` outputs and never touches the one passed in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np

PAST_PREFIX = "past_key_values"
PRESENT_PREFIX = "present"


@dataclass(frozen=True)
class KVCacheState:
    """Per-layer (key, value) arrays shaped (1, kv_heads, T, head_dim)."""

    layers: Tuple[Tuple[np.ndarray, np.ndarray], ...]

    @classmethod
    def empty(
        cls,
        num_layers: int,
        num_kv_heads: int,
        head_dim: int,
        dtype=np.float32,
    ) -> "KVCacheState":
        layers = tuple(
            (
                np.zeros((1, num_kv_heads, 0, head_dim), dtype=dtype),
                np.zeros((1, num_kv_heads, 0, head_dim), dtype=dtype),
            )
            for _ in range(num_layers)
        )
        return cls(layers=layers)

    @classmethod
    def from_present(
        cls,
        output_names: List[str],
        outputs: List[np.ndarray],
        num_layers: int,
    ) -> "KVCacheState":
        """Rebuild a cache from decoder outputs named `present.{i}.key/value`."""
        by_name = dict(zip(output_names, outputs))
        layers = []
        for i in range(num_layers):
            key_name = f"{PRESENT_PREFIX}.{i}.key"
            value_name = f"{PRESENT_PREFIX}.{i}.value"
            if key_name not in by_name or value_name not in by_name:
                raise KeyError(f"decoder output missing {key_name}/{value_name}")
            layers.append((np.asarray(by_name[key_name]), np.asarray(by_name[value_name])))
        return cls(layers=tuple(layers))

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def length(self) -> int:
        """Cached positions (the T axis); 0 before the first decode step."""
        if not self.layers:
            return 0
        return int(self.layers[0][0].shape[2])

    @property
    def dtype(self) -> np.dtype:
        if not self.layers:
            return np.dtype(np.float32)
        return self.layers[0][0].dtype

    def as_feed(self) -> Dict[str, np.ndarray]:
        """Decoder input feed: past_key_values.{i}.key / .value."""
        feed: Dict[str, np.ndarray] = {}
        for i, (key, value) in enumerate(self.layers):
            feed[f"{PAST_PREFIX}.{i}.key"] = key
            feed[f"{PAST_PREFIX}.{i}.value"] = value
        return feed
