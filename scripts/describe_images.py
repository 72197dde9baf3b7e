"""
Describe a batch of images with FastVLM and print a timing report.

Loads the model once, runs every image through the pipeline, and
prints each description followed by count / success rate /
min-mean-max / per-image durations and the stage latency percentiles.

Usage:
    python -m scripts.describe_images photo1.jpg photo2.png
    python -m scripts.describe_images --model-dir data/fastvlm --workers 2 --prompt "What is in this picture?" *.jpg
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from configs.settings import GenerationConfig, get_settings  # noqa: E402
from services.vlm_service import BatchReport, VisionLanguagePipeline, VLMError  # noqa: E402
from utils.logger import setup_logging  # noqa: E402
from utils.metrics import metrics  # noqa: E402


def print_report(report: BatchReport) -> None:
    print(f"\n{'='*50}")
    print(f" Batch Report ({report.total} images)")
    print(f"{'='*50}")
    print(f"  Successful: {report.successes}")
    print(f"  Failed:     {report.failures}")
    print(f"  Rate:       {report.success_rate * 100:.1f}%")

    if report.successes:
        print("")
        print(f"  Min:        {report.min_ms / 1000:.2f} s")
        print(f"  Mean:       {report.mean_ms / 1000:.2f} s")
        print(f"  Max:        {report.max_ms / 1000:.2f} s")
        print(f"  Total:      {report.total_ms / 1000:.2f} s")

    print("\n  Per image:")
    for i, item in enumerate(report.items, start=1):
        status = "ok" if item.ok else f"FAIL {item.error_kind}"
        print(f"    {i:>3}. {item.duration_ms / 1000:7.2f} s  {status:<28} {item.identifier}")

    if report.init_ms is not None:
        print("")
        print(f"  Model init: {report.init_ms / 1000:.2f} s")
    if report.wall_ms is not None:
        print(f"  Batch wall: {report.wall_ms / 1000:.2f} s")
    print(f"{'='*50}")


def main() -> int:
    cfg = get_settings()
    parser = argparse.ArgumentParser(description="Describe images with FastVLM (ONNX Runtime)")
    parser.add_argument("images", nargs="+", help="Image files (PNG, JPEG, WebP, ...)")
    parser.add_argument("--model-dir", type=str, default=cfg.vlm_model_dir)
    parser.add_argument("--prompt", type=str, default=None)
    parser.add_argument("--max-tokens", type=int, default=cfg.max_response_length)
    parser.add_argument("--workers", "-w", type=int, default=cfg.batch_max_workers)
    parser.add_argument("--download", action="store_true", help="Fetch missing model files first")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    setup_logging()

    paths = []
    for p in args.images:
        if Path(p).is_file():
            paths.append(p)
        else:
            print(f"  SKIP missing file: {p}")
    if not paths:
        print("No valid image files given.")
        return 1

    config = GenerationConfig(
        max_response_length=args.max_tokens,
        default_prompt=cfg.default_prompt,
    )

    with VisionLanguagePipeline() as vlm:
        try:
            vlm.initialize(args.model_dir, config, auto_download=args.download or None)
        except VLMError as e:
            print(f"FAIL {e.kind}: {e}")
            return 2

        report = vlm.analyze_batch(paths, prompt=args.prompt, max_workers=args.workers)

    if args.json:
        out = report.summary()
        out["results"] = [
            {"identifier": i.identifier, "text": i.result.text if i.ok else None}
            for i in report.items
        ]
        out["metrics"] = metrics.snapshot()
        print(json.dumps(out, indent=2, ensure_ascii=False))
        return 0 if report.failures == 0 else 3

    for item in report.items:
        if item.ok:
            print(f"\n[{item.identifier}]\n  {item.result.text}")
        else:
            print(f"\n[{item.identifier}]\n  FAIL {item.error_kind}: {item.error}")

    print_report(report)
    return 0 if report.failures == 0 else 3


if __name__ == "__main__":
    sys.exit(main())
