#!/usr/bin/env python3
"""Run the revision_ai edit pipeline on one image.

Inputs:
- `--image`: JPEG/PNG/WebP/GIF file to edit.
- `--annotations`: JSON file with either a `strokes` list (free-hand strokes in
  normalized coordinates) or a `markers` list (`to_ai_map()` dicts).

Outputs under `--outdir`:
- `edited.<ext>`: edited image, or the original when the edit degraded
- `analysis.json`: analysis result, markers and metadata
- `summary.yaml`: recap of the run, including progress events

Model settings come from `--config` (YAML, remote-config keys such as
`ai_gemini_model`) and `AI_*` environment variables (e.g. `AI_GEMINI_MODEL`,
`AI_TEMPERATURE`). Set `PIPELINE_STRICT=1` to surface model failures instead of
falling back.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml

from revision_ai.clients.gemini_litellm import LiteLLMAnalyzer, LiteLLMEditor
from revision_ai.config import load_settings
from revision_ai.errors import ConfigurationError
from revision_ai.pipelines.context import PROCESSING_TYPES, ProcessingContext
from revision_ai.pipelines.orchestrator import EditPipeline, PipelineConfig
from revision_ai.pipelines.progress import CancellationToken, ProcessingProgress
from revision_ai.vision.image import extension_for, read_image_bytes
from revision_ai.vision.markers import ImageMarker, marker_from_ai_map
from revision_ai.vision.strokes import AnnotationStroke, create_intelligent_markers, strokes_to_markers


def _yaml_dump(data: object) -> str:
    dumped = yaml.safe_dump(data, sort_keys=False)
    if dumped is None:
        return ""
    return dumped


def _env_bool(name: str) -> bool | None:
    """Parse an optional bool env var.

    Returns:
        True/False if present, else None.
    """
    raw = os.environ.get(name)
    if raw is None:
        return None
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise SystemExit(f"Invalid {name}={raw!r}; expected 0/1/true/false.")


def _load_markers(path: Path, *, simple: bool) -> list[ImageMarker]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise SystemExit(f"Annotations file must contain a JSON object: {path}")
    if "markers" in data:
        return [marker_from_ai_map(m) for m in data["markers"]]
    strokes = [AnnotationStroke.from_json(s) for s in data.get("strokes", [])]
    return strokes_to_markers(strokes) if simple else create_intelligent_markers(strokes)


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--image", type=str, required=True)
    ap.add_argument("--annotations", type=str, default=None)
    ap.add_argument("--type", type=str, default="objectRemoval", choices=sorted(PROCESSING_TYPES))
    ap.add_argument("--quality", type=str, default="high")
    ap.add_argument("--priority", type=str, default="quality")
    ap.add_argument("--instructions", type=str, default=None)
    ap.add_argument("--simple_markers", action="store_true")
    ap.add_argument("--config", type=str, default=None)
    ap.add_argument("--timeout_s", type=float, default=None)
    ap.add_argument("--outdir", type=str, default="outputs/revision")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    image_path = Path(args.image).expanduser().resolve()
    if not image_path.is_file():
        raise SystemExit(f"--image is not a file: {image_path}")
    outdir = Path(args.outdir).expanduser().resolve()
    outdir.mkdir(parents=True, exist_ok=True)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigurationError as e:
        raise SystemExit(str(e)) from e
    if args.verbose or settings.debug_mode:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    markers: list[ImageMarker] = []
    if args.annotations:
        markers = _load_markers(Path(args.annotations), simple=args.simple_markers)

    context = ProcessingContext(
        processing_type=args.type,
        quality_level=args.quality,
        performance_priority=args.priority,
        markers=tuple(markers),
        custom_instructions=args.instructions,
    )
    strict = bool(_env_bool("PIPELINE_STRICT"))
    pipeline = EditPipeline(
        LiteLLMAnalyzer.from_settings(settings, verbose=args.verbose),
        LiteLLMEditor(),
        settings=settings,
        config=PipelineConfig(enable_fallback=not strict),
    )
    token = CancellationToken.with_timeout(args.timeout_s) if args.timeout_s else CancellationToken()

    def on_progress(p: ProcessingProgress) -> None:
        print(f"[{p.percentage:3d}%] {p.display_name}: {p.message}")

    print(f"Processing {image_path} ({context.processing_type}, {len(markers)} marker(s))")
    result = pipeline.run(read_image_bytes(image_path), context, token=token, on_progress=on_progress)

    report: dict[str, Any] = {
        "status": result.status,
        "analysis": result.analysis.to_json() if result.analysis else None,
        "markers": [m.to_ai_map() for m in markers],
        "detected_markers": [m.to_ai_map() for m in result.detected_markers],
        "metadata": result.metadata,
    }
    (outdir / "analysis.json").write_text(json.dumps(report, indent=2), encoding="utf-8")

    summary: dict[str, Any] = {
        "image": str(image_path),
        "status": result.status,
        "fallback_used": result.fallback_used,
        "degraded": result.degraded,
        "error": None if result.error is None else f"{result.error.category}: {result.error.message}",
        "processing_time_s": round(result.processing_time_s, 3),
        "progress": [{"stage": p.stage, "percentage": p.percentage, "message": p.message} for p in result.progress],
    }
    if result.image:
        out_path = outdir / f"edited{extension_for(result.image)}"
        out_path.write_bytes(result.image)
        summary["output"] = str(out_path)
    (outdir / "summary.yaml").write_text(_yaml_dump(summary), encoding="utf-8")

    print(f"Wrote outputs to {outdir}")
    if result.status != "completed":
        print(f"Pipeline {result.status}: {summary['error']}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
