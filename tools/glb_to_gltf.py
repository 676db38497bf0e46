from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from glb_container import (
    FormatError,
    GlbContainer,
    GlbError,
    IndexMappingError,
    InputNotFoundError,
    ResourceNotFoundError,
    aligned_length,
    read_glb,
)
from gltf_resources import (
    BufferResolver,
    guess_file_extension,
    iter_extension_arrays,
    iter_resource_descriptors,
    list_field,
    write_file_atomic,
)


logger = logging.getLogger(__name__)

GL_FRAGMENT_SHADER = 0x8B30
GL_VERTEX_SHADER = 0x8B31

SHADER_EXTENSIONS: dict[int, str] = {
    GL_VERTEX_SHADER: ".vert",
    GL_FRAGMENT_SHADER: ".frag",
}
DEFAULT_SHADER_EXTENSION = ".glsl"


def _shader_extension(shader_type: Any) -> str:
    # 35633.0 names the same shader stage as 35633
    if isinstance(shader_type, (int, float)) and float(shader_type).is_integer():
        return SHADER_EXTENSIONS.get(int(shader_type), DEFAULT_SHADER_EXTENSION)
    return DEFAULT_SHADER_EXTENSION


@dataclass
class DecomposedGltf:
    gltf: dict[str, Any]
    # sidecar file name -> bytes, in the order they were produced
    sidecars: dict[str, bytes] = field(default_factory=dict)


def split_target_basename(target: str | Path) -> str:
    target = str(target)
    root, ext = os.path.splitext(target)
    if len(ext) > 1:
        return root
    return target


def _check_descriptor_references(gltf: dict[str, Any], buffer_view_count: int) -> None:
    for label, index, descriptor in iter_resource_descriptors(gltf):
        buffer_view_index = descriptor.get("bufferView")
        if buffer_view_index is None:
            continue
        if not isinstance(buffer_view_index, int) or not (0 <= buffer_view_index < buffer_view_count):
            raise IndexMappingError(f"{label}[{index}].bufferView {buffer_view_index} does not exist")


def _read_buffer_view(resolver: BufferResolver, buffer_views: list[Any], index: int) -> bytes:
    view = buffer_views[index]
    if not isinstance(view, dict):
        raise FormatError(f"Invalid bufferViews[{index}] entry")

    byte_length = view.get("byteLength")
    byte_offset = view.get("byteOffset", 0)
    if not isinstance(byte_length, int) or byte_length < 0:
        raise FormatError(f"bufferViews[{index}].byteLength missing or invalid")
    if not isinstance(byte_offset, int) or byte_offset < 0:
        raise FormatError(f"bufferViews[{index}].byteOffset invalid")

    buffer_index = view.get("buffer")
    try:
        data = resolver.resolve(buffer_index)
    except ResourceNotFoundError as exc:
        raise ResourceNotFoundError(f"bufferViews[{index}]: {exc}") from exc
    except IndexMappingError as exc:
        raise IndexMappingError(f"bufferViews[{index}]: {exc}") from exc

    if byte_offset + byte_length > len(data):
        raise FormatError(f"bufferViews[{index}] points outside buffers[{buffer_index}]")
    return data[byte_offset : byte_offset + byte_length]


def _matching(entries: list[Any], buffer_view_index: int) -> list[tuple[int, dict[str, Any]]]:
    return [
        (position, entry)
        for position, entry in enumerate(entries)
        if isinstance(entry, dict) and entry.get("bufferView") == buffer_view_index
    ]


def _find_extension_descriptors(gltf: dict[str, Any], buffer_view_index: int) -> list[tuple[str, str, dict[str, Any]]]:
    found: list[tuple[str, str, dict[str, Any]]] = []
    for extension_name, property_name, entries in iter_extension_arrays(gltf):
        for _, entry in _matching(entries, buffer_view_index):
            found.append((extension_name, property_name, entry))
    return found


def _redirect(descriptors: list[dict[str, Any]], filename: str, *, drop_mime_type: bool) -> None:
    for descriptor in descriptors:
        descriptor.pop("bufferView", None)
        if drop_mime_type:
            descriptor.pop("mimeType", None)
        descriptor["uri"] = filename


def build_buffer_view_index_map(generic_indices: list[int]) -> dict[int, int]:
    return {old: new for new, old in enumerate(generic_indices)}


def remap_buffer_view_references(gltf: dict[str, Any], index_map: dict[int, int]) -> None:
    """Rewrite every accessor / primitive-extension bufferView through ``index_map``.

    An index missing from the map was turned into a sidecar file (or never
    existed); referencing it from geometry is an IndexMappingError.
    """

    def remap(old_index: Any, site: str) -> int:
        if not isinstance(old_index, int) or old_index not in index_map:
            raise IndexMappingError(f"{site} references bufferView {old_index}, which has no data bufferView after conversion")
        return index_map[old_index]

    for accessor_index, accessor in enumerate(list_field(gltf, "accessors")):
        if not isinstance(accessor, dict):
            continue
        if accessor.get("bufferView") is not None:
            accessor["bufferView"] = remap(accessor["bufferView"], f"accessors[{accessor_index}]")
        sparse = accessor.get("sparse")
        if not isinstance(sparse, dict):
            continue
        for part in ("indices", "values"):
            target = sparse.get(part)
            if isinstance(target, dict) and target.get("bufferView") is not None:
                target["bufferView"] = remap(target["bufferView"], f"accessors[{accessor_index}].sparse.{part}")

    for mesh_index, mesh in enumerate(list_field(gltf, "meshes")):
        if not isinstance(mesh, dict):
            continue
        for primitive_index, primitive in enumerate(mesh.get("primitives", [])):
            extensions = primitive.get("extensions") if isinstance(primitive, dict) else None
            if not isinstance(extensions, dict):
                continue
            for extension_name, extension in extensions.items():
                if isinstance(extension, dict) and extension.get("bufferView") is not None:
                    site = f"meshes[{mesh_index}].primitives[{primitive_index}].extensions.{extension_name}"
                    extension["bufferView"] = remap(extension["bufferView"], site)


def decompose_glb(container: GlbContainer, base_dir: Path, sidecar_basename: str) -> DecomposedGltf:
    # sidecar_basename is a bare file name prefix, without a directory
    gltf = copy.deepcopy(container.gltf)
    result = DecomposedGltf(gltf=gltf)

    buffer_views = list_field(gltf, "bufferViews")
    images = list_field(gltf, "images")
    shaders = list_field(gltf, "shaders")
    _check_descriptor_references(gltf, len(buffer_views))

    resolver = BufferResolver(gltf, base_dir, container.bin_chunk)

    generic_indices: list[int] = []
    data_parts: list[bytes] = []
    cursor = 0

    for index in range(len(buffer_views)):
        image_matches = _matching(images, index)
        shader_matches = _matching(shaders, index)
        extension_matches = _find_extension_descriptors(gltf, index)

        if image_matches:
            first_position, first_image = image_matches[0]
            extension, _ = guess_file_extension(first_image.get("mimeType"))
            filename = f"{sidecar_basename}_img{first_position}{extension}"
        elif shader_matches:
            first_position, first_shader = shader_matches[0]
            filename = f"{sidecar_basename}_shader{first_position}{_shader_extension(first_shader.get('type'))}"
        elif extension_matches:
            extension_name, property_name, first_entry = extension_matches[0]
            extension, _ = guess_file_extension(first_entry.get("mimeType"))
            filename = f"{sidecar_basename}_{extension_name}_{property_name}_{index}{extension}"
        else:
            data = _read_buffer_view(resolver, buffer_views, index)
            padded_length = aligned_length(len(data))
            data_parts.append(data + b"\x00" * (padded_length - len(data)))

            view = buffer_views[index]
            view["buffer"] = 0
            view["byteOffset"] = cursor
            view["byteLength"] = len(data)
            logger.debug("bufferView %d -> data bufferView %d at offset %d", index, len(generic_indices), cursor)
            generic_indices.append(index)
            cursor += padded_length
            continue

        result.sidecars[filename] = _read_buffer_view(resolver, buffer_views, index)
        # every descriptor on this view follows the one file, whatever kind claimed it
        if image_matches:
            _, known = guess_file_extension(image_matches[0][1].get("mimeType"))
            _redirect([image for _, image in image_matches], filename, drop_mime_type=known)
        if shader_matches:
            _redirect([shader for _, shader in shader_matches], filename, drop_mime_type=True)
        if extension_matches:
            _, known = guess_file_extension(extension_matches[0][2].get("mimeType"))
            _redirect([entry for _, _, entry in extension_matches], filename, drop_mime_type=known)
        logger.debug(
            "bufferView %d -> sidecar %s (%d images, %d shaders, %d extension entries)",
            index,
            filename,
            len(image_matches),
            len(shader_matches),
            len(extension_matches),
        )

    if "bufferViews" in gltf or generic_indices:
        gltf["bufferViews"] = [buffer_views[index] for index in generic_indices]
    remap_buffer_view_references(gltf, build_buffer_view_index_map(generic_indices))

    data_filename = f"{sidecar_basename}_data.bin"
    data_blob = b"".join(data_parts)
    result.sidecars[data_filename] = data_blob
    gltf["buffers"] = [{"uri": data_filename, "byteLength": len(data_blob)}]
    return result


def _read_source(source: Path) -> GlbContainer:
    if not source.is_file():
        raise InputNotFoundError(f"Input not found: {source}")
    return read_glb(source.read_bytes())


def _write_decomposed(container: GlbContainer, base_dir: Path, target: Path) -> Path:
    sidecar_basename = Path(split_target_basename(target)).name
    result = decompose_glb(container, base_dir, sidecar_basename)

    out_dir = target.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    for filename, data in result.sidecars.items():
        write_file_atomic(out_dir / filename, data)

    text = json.dumps(result.gltf, ensure_ascii=False, indent=2) + "\n"
    write_file_atomic(target, text.encode("utf-8"))
    return target


def convert_glb_to_gltf(source: str | Path, target: str | Path) -> Path:
    source = Path(source)
    container = _read_source(source)
    return _write_decomposed(container, source.parent, Path(target))


def convert_glb_to_gltf_load_first(source: str | Path, get_target: Callable[[], str | Path | None]) -> Path | None:
    """Validate and read ``source`` before asking ``get_target`` where to write.

    Lets a caller (e.g. a prompt for the output name) only ask once the input is
    known to be a readable GLB. Returns None when ``get_target`` returns None.
    """
    source = Path(source)
    container = _read_source(source)
    target = get_target()
    if target is None:
        return None
    return _write_decomposed(container, source.parent, Path(target))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Split a binary glTF (.glb) into a .gltf document plus image, shader, extension and data sidecar files.",
    )
    parser.add_argument("input", type=Path, help="Input .glb file")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output .gltf filename (default: input name with a .gltf extension; sidecars are written next to it)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log how every bufferView is classified")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    output_path: Path = args.output or args.input.with_suffix(".gltf")
    convert_glb_to_gltf(args.input, output_path)
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
