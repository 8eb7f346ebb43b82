import argparse
import json
import logging
import os
import sys
from pprint import pprint
from typing import Any, Dict, List, Optional

from avatar_processor import AvatarProcessor
from errors import ProcessingError
from face_detector import DEFAULT_MODEL_PATH, FaceDetector
from presets import PRESETS, PRESET_DESCRIPTIONS


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate the shortcut flags into an override structure.

    ``--brightness`` pins the base multiplier and every adaptive tier to the
    same value so the result does not depend on the image's luminance.
    """
    overrides: Dict[str, Any] = {}
    if args.settings:
        overrides = json.loads(args.settings)
        if not isinstance(overrides, dict):
            raise ValueError("--settings must be a JSON object")

    def group(name: str) -> Dict[str, Any]:
        return overrides.setdefault(name, {})

    if args.brightness is not None:
        group("brightness").update(
            base=args.brightness,
            darkImages=args.brightness,
            mediumDarkImages=args.brightness,
            brightImages=args.brightness,
        )
    if args.saturation is not None:
        group("color")["saturation"] = args.saturation
    if args.gamma is not None:
        group("contrast")["gamma"] = args.gamma
    if args.sharpening is not None:
        group("sharpening")["sigma"] = args.sharpening
    if args.crop_size is not None:
        group("cropping")["faceDetectedSize"] = args.crop_size
    return overrides


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Configure command-line options for the avatar preprocessing tool."""

    parser = argparse.ArgumentParser(
        description="Face-aware avatar photo preprocessing",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("input", nargs="?", help="Path to the input image")
    parser.add_argument("output", nargs="?", help="Path where the processed PNG is written")
    parser.add_argument(
        "--preset",
        type=str,
        default="default",
        help=f"Preset to start from ({', '.join(PRESETS)})",
    )
    parser.add_argument("--brightness", type=float, default=None, help="Brightness multiplier (0.8-1.4)")
    parser.add_argument("--saturation", type=float, default=None, help="Saturation multiplier (0.8-1.5)")
    parser.add_argument("--gamma", type=float, default=None, help="Gamma correction (0.8-1.8)")
    parser.add_argument("--sharpening", type=float, default=None, help="Sharpening sigma (0.5-2.5)")
    parser.add_argument(
        "--crop-size",
        dest="crop_size",
        type=float,
        default=None,
        help="Fraction of the shorter side kept around a detected face (0.5-1.0)",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="Extra overrides as a JSON object, e.g. '{\"output\": {\"size\": 512}}'",
    )
    parser.add_argument("--model-path", dest="model_path", type=str, default=DEFAULT_MODEL_PATH,
                        help="Path to the YOLO face model weights")
    parser.add_argument("--logdir", type=str, default="./logs", help="Directory for debug images")
    parser.add_argument("--debug", action="store_true", help="Save an annotated crop decision image")
    parser.add_argument("--list-presets", dest="list_presets", action="store_true",
                        help="List the available presets and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline progress")
    args = parser.parse_args(argv)
    if not args.list_presets and (not args.input or not args.output):
        parser.error("input and output are required unless --list-presets is given")
    return args


def main(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.list_presets:
        for name in PRESETS:
            print(f"{name:10s} {PRESET_DESCRIPTIONS.get(name, '')}")
        return 0

    try:
        overrides = build_overrides(args)
    except ValueError as e:
        print(f"ERROR: invalid --settings: {e}", file=sys.stderr)
        return 2

    print("=== Avatar Photo Preprocessing ===")
    print(f"Input image: {args.input}")
    print(f"Preset: {args.preset}")
    if overrides:
        print(f"Overrides: {json.dumps(overrides)}")

    processor = AvatarProcessor(detector=FaceDetector(model_path=args.model_path))
    try:
        result = processor.process_path(
            args.input,
            preset=args.preset,
            overrides=overrides,
            logdir=args.logdir,
            save_debug=args.debug,
        )
    except (OSError, ProcessingError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    out_dir = os.path.dirname(os.path.abspath(args.output))
    os.makedirs(out_dir, exist_ok=True)
    with open(args.output, "wb") as fh:
        fh.write(result.image_bytes)

    pprint(result.to_dict())
    print(f"[Done] Saved: {args.output}")
    if args.debug:
        print(f"[Done] Crop decision saved under {args.logdir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(parse_args()))
