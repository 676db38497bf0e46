from __future__ import annotations

import argparse
import copy
import json
import logging
import sys
from pathlib import Path
from typing import Any

from glb_container import FormatError, GlbError, IndexMappingError, InputNotFoundError, MalformedJsonError, aligned_length, pack_glb
from gltf_resources import DEFAULT_MIME_TYPE, iter_resource_descriptors, list_field, load_resource, write_file_atomic


logger = logging.getLogger(__name__)


class _PayloadLayout:
    def __init__(self) -> None:
        self.offset = 0
        self.placements: list[tuple[int, bytes]] = []

    def append(self, data: bytes) -> int:
        start = self.offset
        self.placements.append((start, data))
        self.offset += aligned_length(len(data))
        return start

    def to_bytes(self) -> bytes:
        payload = bytearray(self.offset)
        for start, data in self.placements:
            payload[start : start + len(data)] = data
        return bytes(payload)


def _merge_buffers(gltf: dict[str, Any], base_dir: Path, layout: _PayloadLayout) -> dict[int, int]:
    buffer_offsets: dict[int, int] = {}
    for index, buffer in enumerate(list_field(gltf, "buffers")):
        if not isinstance(buffer, dict):
            raise FormatError(f"Invalid buffers[{index}] entry")
        resource = load_resource(buffer, base_dir, label=f"buffers[{index}]")
        if resource is None:
            logger.debug("buffers[%d] has no loadable data, skipped", index)
            continue
        buffer.pop("uri", None)
        buffer["byteLength"] = len(resource.data)
        buffer_offsets[index] = layout.append(resource.data)
    return buffer_offsets


def _rebase_buffer_views(buffer_views: list[Any], buffer_offsets: dict[int, int]) -> None:
    for index, view in enumerate(buffer_views):
        if not isinstance(view, dict):
            raise FormatError(f"Invalid bufferViews[{index}] entry")
        buffer_index = view.get("buffer")
        if not isinstance(buffer_index, int) or buffer_index not in buffer_offsets:
            raise IndexMappingError(f"bufferViews[{index}] references buffers[{buffer_index}], which has no data")
        byte_offset = view.get("byteOffset", 0)
        if not isinstance(byte_offset, int) or byte_offset < 0:
            raise FormatError(f"bufferViews[{index}].byteOffset invalid")
        view["byteOffset"] = byte_offset + buffer_offsets[buffer_index]
        view["buffer"] = 0


def _embed_resources(gltf: dict[str, Any], base_dir: Path, buffer_views: list[Any], layout: _PayloadLayout) -> None:
    for label, index, descriptor in iter_resource_descriptors(gltf):
        if "uri" not in descriptor:
            continue
        resource = load_resource(descriptor, base_dir, label=f"{label}[{index}]")
        if resource is None:
            logger.warning("%s[%d].uri holds no usable data, dropped", label, index)
            descriptor.pop("uri", None)
            continue

        byte_offset = layout.append(resource.data)
        descriptor["bufferView"] = len(buffer_views)
        buffer_views.append({"buffer": 0, "byteOffset": byte_offset, "byteLength": len(resource.data)})

        mime_type = resource.mime_type or DEFAULT_MIME_TYPE
        if mime_type != DEFAULT_MIME_TYPE or not isinstance(descriptor.get("mimeType"), str):
            descriptor["mimeType"] = mime_type
        del descriptor["uri"]
        logger.debug("%s[%d] embedded as bufferView %d (%d bytes)", label, index, descriptor["bufferView"], len(resource.data))


def compose_glb(gltf: dict[str, Any], base_dir: Path) -> bytes:
    gltf = copy.deepcopy(gltf)
    base_dir = Path(base_dir)
    layout = _PayloadLayout()

    buffer_offsets = _merge_buffers(gltf, base_dir, layout)

    buffer_views = list_field(gltf, "bufferViews")
    _rebase_buffer_views(buffer_views, buffer_offsets)
    _embed_resources(gltf, base_dir, buffer_views, layout)
    if buffer_views and "bufferViews" not in gltf:
        gltf["bufferViews"] = buffer_views

    gltf["buffers"] = [{"byteLength": layout.offset}]

    json_bytes = json.dumps(gltf, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    return pack_glb(json_bytes, layout.to_bytes())


def convert_to_glb(gltf: dict[str, Any], source: str | Path, output: str | Path) -> Path:
    output = Path(output)
    data = compose_glb(gltf, Path(source).parent)
    output.parent.mkdir(parents=True, exist_ok=True)
    write_file_atomic(output, data)
    return output


def convert_gltf_to_glb(source: str | Path, output: str | Path) -> Path:
    source = Path(source)
    if not source.is_file():
        raise InputNotFoundError(f"Input not found: {source}")

    try:
        gltf = json.loads(source.read_text("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedJsonError(f"Failed to read JSON: {source} ({exc})") from exc
    if not isinstance(gltf, dict):
        raise MalformedJsonError(f"JSON root must be an object: {source}")

    return convert_to_glb(gltf, source, output)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Pack a .gltf document and every buffer, image, shader and extension resource it references into one .glb.",
    )
    parser.add_argument("input", type=Path, help="Input .gltf file")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output .glb filename (default: input name with a .glb extension)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every buffer and resource as it is embedded")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    output_path: Path = args.output or args.input.with_suffix(".glb")
    convert_gltf_to_glb(args.input, output_path)
    logger.info("Converted %s -> %s", args.input, output_path)
    return 0


def run() -> None:
    try:
        raise SystemExit(main())
    except GlbError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2)


if __name__ == "__main__":
    run()
