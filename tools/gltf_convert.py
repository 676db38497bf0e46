#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from glb_container import GlbError
from glb_to_gltf import convert_glb_to_gltf
from gltf_to_glb import convert_gltf_to_glb


logger = logging.getLogger(__name__)

GLTF_SUFFIX = ".gltf"
GLB_SUFFIX = ".glb"


def default_output_path(input_path: Path) -> Path | None:
    suffix = input_path.suffix.lower()
    if suffix == GLTF_SUFFIX:
        return input_path.with_suffix(GLB_SUFFIX)
    if suffix == GLB_SUFFIX:
        return input_path.with_suffix(GLTF_SUFFIX)
    return None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert between binary glTF (.glb) and .gltf + sidecar files. The direction follows the input extension.",
    )
    parser.add_argument("input", type=Path, help="Input .glb or .gltf file")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output filename (default: input name with .glb/.gltf swapped; sidecars are written next to it)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log how every bufferView and resource is handled")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    input_path: Path = args.input
    suffix = input_path.suffix.lower()
    if suffix not in (GLTF_SUFFIX, GLB_SUFFIX):
        print("Please provide a .glb or a .gltf to convert", file=sys.stderr)
        return 1

    output_path: Path = args.output or default_output_path(input_path)
    if suffix == GLTF_SUFFIX:
        convert_gltf_to_glb(input_path, output_path)
    else:
        convert_glb_to_gltf(input_path, output_path)
    logger.info("Converted %s -> %s", input_path, output_path)
    return 0


def run() -> None:
    try:
        raise SystemExit(main())
    except GlbError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2)


if __name__ == "__main__":
    run()
