"""
Fetch the FastVLM-0.5B ONNX export (three graphs + tokenizer).

Files already present are skipped. Total download is about 1.4 GB.

Usage:
    python -m scripts.download_models
    python -m scripts.download_models --model-dir data/fastvlm
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from configs.settings import get_settings  # noqa: E402
from services.vlm_service.provisioning import download_models, missing_model_files  # noqa: E402
from utils.logger import setup_logging  # noqa: E402


def _progress_bars():
    bars = {}

    def _report(name: str, done: int, total: int) -> None:
        bar = bars.get(name)
        if bar is None:
            bar = bars[name] = tqdm(
                total=total or None,
                desc=f"  {name}",
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
            )
        bar.update(done - bar.n)
        if total and done >= total:
            bar.close()

    return _report


def main() -> int:
    cfg = get_settings()
    parser = argparse.ArgumentParser(description="Download FastVLM ONNX model files")
    parser.add_argument("--model-dir", type=str, default=cfg.vlm_model_dir)
    args = parser.parse_args()

    setup_logging()

    missing = missing_model_files(args.model_dir)
    if not missing:
        print(f"All model files present in {args.model_dir}")
        return 0

    print(f"Downloading {len(missing)} file(s) to {args.model_dir}: {', '.join(missing)}")
    written = download_models(args.model_dir, progress=_progress_bars())
    print(f"Done. Wrote {len(written)} file(s).")
    print(f"To remove the models later, delete {Path(args.model_dir).resolve()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
