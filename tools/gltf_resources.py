from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from glb_container import FormatError, IndexMappingError, ResourceNotFoundError


logger = logging.getLogger(__name__)

DATA_URI_PREFIX = "data:"

DEFAULT_MIME_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = ".bin"

# First extension of each entry is the one written on export.
MIME_TYPE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "image/png": ("png",),
    "image/jpeg": ("jpg", "jpeg"),
    "image/vnd-ms.dds": ("dds",),
    "image/webp": ("webp",),
    "image/gif": ("gif",),
    "image/ktx2": ("ktx2",),
    "text/plain": ("glsl", "vert", "vs", "frag", "fs", "txt"),
    "audio/wav": ("wav",),
}


@dataclass
class ResourceData:
    mime_type: str
    data: bytes


def guess_file_extension(mime_type: str | None) -> tuple[str, bool]:
    extensions = MIME_TYPE_EXTENSIONS.get(mime_type) if isinstance(mime_type, str) else None
    if extensions:
        return f".{extensions[0]}", True
    return DEFAULT_EXTENSION, False


def guess_mime_type(filename: str) -> str:
    lowered = filename.lower()
    for mime_type, extensions in MIME_TYPE_EXTENSIONS.items():
        for extension in extensions:
            if lowered.endswith(f".{extension}"):
                return mime_type
    return DEFAULT_MIME_TYPE


def is_data_uri(uri: str) -> bool:
    return uri.startswith(DATA_URI_PREFIX)


def decode_data_uri(uri: str) -> ResourceData | None:
    """Decode ``data:<type>;[base64],<payload>``.

    Returns None when the URI has no ``;`` after the media type or no ``,``
    before the payload, or when the base64 payload cannot be decoded.
    """
    header, comma, payload = uri[len(DATA_URI_PREFIX) :].partition(",")
    media_type, semicolon, params = header.partition(";")
    if not comma or not semicolon:
        return None

    if "base64" in params.split(";"):
        try:
            data = base64.b64decode(payload)
        except (binascii.Error, ValueError) as exc:
            logger.warning("Skipping undecodable data URI (%s): %s", media_type or "no media type", exc)
            return None
    else:
        data = urllib.parse.unquote_to_bytes(payload)

    return ResourceData(mime_type=media_type, data=data)


def resolve_uri_path(uri: str, base_dir: Path) -> Path:
    return Path(base_dir) / urllib.parse.unquote(uri)


def load_resource(descriptor: dict[str, Any], base_dir: Path, *, label: str = "resource") -> ResourceData | None:
    """Load the bytes a descriptor's ``uri`` points at.

    None means there is nothing to load: no ``uri`` at all, or a malformed
    data URI. A relative file that does not exist raises ResourceNotFoundError.
    """
    uri = descriptor.get("uri")
    if uri is None:
        return None
    if not isinstance(uri, str):
        raise FormatError(f"{label}.uri must be a string")

    if is_data_uri(uri):
        return decode_data_uri(uri)

    path = resolve_uri_path(uri, base_dir)
    if not path.is_file():
        raise ResourceNotFoundError(f"{label}: file not found: {uri} (resolved to {path})")
    return ResourceData(mime_type=guess_mime_type(path.name), data=path.read_bytes())


class BufferResolver:
    def __init__(self, gltf: dict[str, Any], base_dir: Path, bin_chunk: bytes | None = None) -> None:
        buffers = gltf.get("buffers")
        self._buffers: list[Any] = buffers if isinstance(buffers, list) else []
        self._base_dir = Path(base_dir)
        self._resolved: dict[int, bytes] = {}
        # the container BIN chunk is buffer 0 unless that buffer names its own uri
        if bin_chunk is not None and self._buffers and isinstance(self._buffers[0], dict) and "uri" not in self._buffers[0]:
            self._resolved[0] = bin_chunk

    def resolve(self, buffer_index: Any) -> bytes:
        if not isinstance(buffer_index, int) or not (0 <= buffer_index < len(self._buffers)):
            raise IndexMappingError(f"buffer index out of range: {buffer_index}")
        if buffer_index in self._resolved:
            return self._resolved[buffer_index]
        buffer = self._buffers[buffer_index]
        if not isinstance(buffer, dict):
            raise FormatError(f"Invalid buffers[{buffer_index}] entry")

        resource = load_resource(buffer, self._base_dir, label=f"buffers[{buffer_index}]")
        if resource is None:
            raise ResourceNotFoundError(f"Content of buffers[{buffer_index}] not found")
        self._resolved[buffer_index] = resource.data
        return resource.data


def list_field(gltf: dict[str, Any], key: str) -> list[Any]:
    value = gltf.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise FormatError(f"glTF.{key} must be an array")
    return value


def iter_extension_arrays(gltf: dict[str, Any]) -> Iterator[tuple[str, str, list[Any]]]:
    extensions = gltf.get("extensions")
    if not isinstance(extensions, dict):
        return
    for extension_name, extension in extensions.items():
        if not isinstance(extension, dict):
            continue
        for property_name, value in extension.items():
            if isinstance(value, list):
                yield extension_name, property_name, value


def iter_resource_descriptors(gltf: dict[str, Any]) -> Iterator[tuple[str, int, dict[str, Any]]]:
    for key in ("images", "shaders"):
        entries = gltf.get(key)
        if not isinstance(entries, list):
            continue
        for index, entry in enumerate(entries):
            if isinstance(entry, dict):
                yield key, index, entry

    for extension_name, property_name, entries in iter_extension_arrays(gltf):
        for index, entry in enumerate(entries):
            if isinstance(entry, dict):
                yield f"extensions.{extension_name}.{property_name}", index, entry


def write_file_atomic(path: Path, data: bytes) -> None:
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Wrote %s (%d bytes)", path, len(data))
