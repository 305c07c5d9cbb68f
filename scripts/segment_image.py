#!/usr/bin/env python3
"""Segment one region of an image from a point or box prompt.

Core logic lives in `stepwise_sam.pipelines.segmentation`. This script only
parses arguments and writes outputs:

  - `mask.png`: the binary mask (white = selected region)
  - `overlay.png`: the mask composited over the input image
  - `result.json`: prompt, image size and mask area
"""

import argparse
import logging
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from stepwise_sam.config import PipelineSettings, load_settings
from stepwise_sam.pipelines.segmentation import InferencePipeline, Progress
from stepwise_sam.vision.image import ensure_dir, read_image
from stepwise_sam.vision.types import Annotation, BoundingBox, Point
from stepwise_sam.vision.vis import overlay_mask, save_mask

LOG = logging.getLogger("segment_image")


class _ResultJson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: str
    image_w: int
    image_h: int
    prompt: dict[str, float | bool]
    mask_area: int
    incremental: bool
    slices: int


def _annotation(args: argparse.Namespace) -> Annotation:
    if args.point is not None:
        x, y = args.point
        return Point(x=x, y=y, inside=not args.background)
    x1, y1, x2, y2 = args.box
    return BoundingBox(x1=x1, y1=y1, x2=x2, y2=y2)


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--encoder", type=str, required=True, help="TorchScript image encoder")
    ap.add_argument("--decoder", type=str, required=True, help="TorchScript mask decoder")
    ap.add_argument("--image", type=str, required=True)
    prompt = ap.add_mutually_exclusive_group(required=True)
    prompt.add_argument("--point", type=float, nargs=2, metavar=("X", "Y"))
    prompt.add_argument("--box", type=float, nargs=4, metavar=("X1", "Y1", "X2", "Y2"))
    ap.add_argument("--background", action="store_true", help="treat --point as a background point")
    ap.add_argument("--config", type=str, default=None, help="YAML pipeline settings")
    ap.add_argument("--incremental", action="store_true", help="run in step-budgeted slices")
    ap.add_argument("--out", type=str, default="outputs/segment")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    image_path = Path(args.image).expanduser().resolve()
    if not image_path.is_file():
        raise SystemExit(f"--image is not a file: {image_path}")
    settings = load_settings(Path(args.config)) if args.config else PipelineSettings()
    outdir = ensure_dir(Path(args.out).expanduser().resolve())

    img = read_image(image_path)
    annotation = _annotation(args)
    pipeline = InferencePipeline.from_files(Path(args.encoder), Path(args.decoder), settings)
    slices = 0
    try:
        if args.incremental:
            with pipeline.segment_incremental(img, annotation) as run:
                for event in run:
                    if isinstance(event, Progress):
                        slices += 1
                        LOG.info("%s %s/%s", event.stage, event.steps_done, event.total_steps)
                mask = run.run_to_completion()
        else:
            mask = pipeline.segment_blocking(img, annotation)
    finally:
        pipeline.close()

    save_mask(mask, outdir / "mask.png")
    overlay_mask(img, mask).save(outdir / "overlay.png")
    result = _ResultJson(
        image=str(image_path),
        image_w=img.width,
        image_h=img.height,
        prompt=dict(vars(annotation)),
        mask_area=int(mask.sum()),
        incremental=bool(args.incremental),
        slices=slices,
    )
    (outdir / "result.json").write_text(result.model_dump_json(indent=2), encoding="utf-8")
    LOG.info("Wrote %s", outdir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
