"""
Model provisioning — make sure the four FastVLM files are on disk.

The pipeline only requires that the model directory contains
tokenizer.json and the three ONNX graphs. This module is the
optional collaborator that fetches them from the Hugging Face
onnx-community export when they are missing:
  - files already present are skipped;
  - each file streams to `<name>.part` and is renamed on completion,
    so an interrupted download never leaves a truncated graph behind.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

import httpx

from configs.settings import Settings, get_settings
from services.vlm_service.sessions import MODEL_FILES
from utils.logger import get_logger
from utils.timing import timed

_log = get_logger(__name__)


@dataclass(frozen=True)
class RemoteModelFile:
    name: str
    remote_path: str
    approx_size_mb: float


REMOTE_FILES: List[RemoteModelFile] = [
    RemoteModelFile(MODEL_FILES["vision"], f"onnx/{MODEL_FILES['vision']}", 450.0),
    RemoteModelFile(MODEL_FILES["embed"], f"onnx/{MODEL_FILES['embed']}", 12.0),
    RemoteModelFile(MODEL_FILES["decoder"], f"onnx/{MODEL_FILES['decoder']}", 920.0),
    RemoteModelFile(MODEL_FILES["tokenizer"], MODEL_FILES["tokenizer"], 2.2),
]


def missing_model_files(model_dir: Union[str, Path]) -> List[str]:
    """Names of required files not present in model_dir (or its onnx/ subdir)."""
    root = Path(model_dir)
    return [
        f.name
        for f in REMOTE_FILES
        if not (root / f.name).is_file() and not (root / "onnx" / f.name).is_file()
    ]


def download_models(
    model_dir: Union[str, Path],
    *,
    client: Optional[httpx.Client] = None,
    settings: Optional[Settings] = None,
    progress: Optional[Callable[[str, int, int], None]] = None,
) -> List[Path]:
    """
    Download every missing model file into model_dir.

    Returns the paths written. Raises httpx.HTTPStatusError on a
    non-2xx response; the partial file is removed.
    """
    cfg = settings or get_settings()
    root = Path(model_dir)
    root.mkdir(parents=True, exist_ok=True)

    missing = set(missing_model_files(root))
    if not missing:
        _log.info("models_already_present", model_dir=str(root))
        return []

    own_client = client is None
    if own_client:
        client = httpx.Client(
            timeout=cfg.download_timeout_seconds,
            follow_redirects=True,
        )

    total_mb = sum(f.approx_size_mb for f in REMOTE_FILES if f.name in missing)
    _log.info("model_download_started", model_dir=str(root), files=len(missing), approx_mb=total_mb)

    written: List[Path] = []
    try:
        for remote in REMOTE_FILES:
            if remote.name not in missing:
                _log.info("model_file_present", file=remote.name)
                continue
            url = f"{cfg.vlm_model_base_url.rstrip('/')}/{remote.remote_path}"
            with timed(f"download_{remote.name}") as t:
                path = _download_file(client, url, root / remote.name, cfg.download_chunk_size, progress)
            _log.info("model_file_downloaded", file=remote.name, ms=round(t["ms"], 1))
            written.append(path)
    finally:
        if own_client:
            client.close()

    return written


def _download_file(
    client: httpx.Client,
    url: str,
    dest: Path,
    chunk_size: int,
    progress: Optional[Callable[[str, int, int], None]],
) -> Path:
    tmp = dest.with_name(dest.name + ".part")
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0))
            done = 0
            with open(tmp, "wb") as fh:
                for chunk in response.iter_bytes(chunk_size):
                    fh.write(chunk)
                    done += len(chunk)
                    if progress is not None:
                        progress(dest.name, done, total)
        os.replace(tmp, dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        _log.error("model_file_download_failed", url=url)
        raise
    return dest
