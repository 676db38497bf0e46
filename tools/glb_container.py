from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any


GLB_MAGIC = b"glTF"
GLB_VERSION_SUPPORTED = 2

CHUNK_TYPE_JSON = 0x4E4F534A  # b"JSON"
CHUNK_TYPE_BIN = 0x004E4942  # b"BIN\0"

GLB_HEADER_LENGTH = 12
CHUNK_HEADER_LENGTH = 8

ALIGNMENT = 4


class GlbError(RuntimeError):
    pass


class InputNotFoundError(GlbError):
    pass


class FormatError(GlbError):
    pass


class UnsupportedVersionError(GlbError):
    pass


class ResourceNotFoundError(GlbError):
    pass


class IndexMappingError(GlbError):
    pass


class MalformedJsonError(GlbError):
    pass


@dataclass
class GlbContainer:
    version: int
    total_length: int
    gltf: dict[str, Any]
    bin_chunk: bytes | None


def aligned_length(value: int) -> int:
    remainder = value % ALIGNMENT
    if remainder == 0:
        return value
    return value + (ALIGNMENT - remainder)


def read_header(data: bytes) -> int:
    """Validate the 12-byte file header and return the declared total length.

    The declared length is not compared with ``len(data)``: some writers round
    it generously and the chunks carry their own lengths anyway.
    """
    if len(data) < GLB_HEADER_LENGTH:
        raise FormatError("Invalid GLB: file too small")

    magic, version, total_length = struct.unpack_from("<4sII", data, 0)
    if magic != GLB_MAGIC:
        raise FormatError("Invalid GLB: bad magic")
    if version != GLB_VERSION_SUPPORTED:
        raise UnsupportedVersionError(f"Unsupported GLB version: {version} (expected {GLB_VERSION_SUPPORTED})")
    return total_length


def read_chunk(data: bytes, offset: int) -> tuple[int, int, bytes]:
    if offset + CHUNK_HEADER_LENGTH > len(data):
        raise FormatError(f"Invalid GLB: truncated chunk header at offset {offset}")
    chunk_length, chunk_type = struct.unpack_from("<II", data, offset)
    start = offset + CHUNK_HEADER_LENGTH
    if start + chunk_length > len(data):
        raise FormatError(
            f"Invalid GLB: chunk at offset {offset} declares {chunk_length} bytes, only {len(data) - start} available"
        )
    return chunk_length, chunk_type, data[start : start + chunk_length]


def write_header(total_length: int) -> bytes:
    return struct.pack("<4sII", GLB_MAGIC, GLB_VERSION_SUPPORTED, total_length)


def write_chunk_header(length: int, chunk_type: int) -> bytes:
    return struct.pack("<II", length, chunk_type)


def read_glb(data: bytes) -> GlbContainer:
    total_length = read_header(data)

    json_length, json_type, json_chunk = read_chunk(data, GLB_HEADER_LENGTH)
    if json_type != CHUNK_TYPE_JSON:
        raise FormatError(f"Invalid GLB: first chunk is not JSON (type 0x{json_type:08X})")

    bin_chunk: bytes | None = None
    offset = GLB_HEADER_LENGTH + CHUNK_HEADER_LENGTH + json_length
    while offset < len(data):
        chunk_length, chunk_type, chunk_data = read_chunk(data, offset)
        offset += CHUNK_HEADER_LENGTH + chunk_length
        if chunk_type == CHUNK_TYPE_BIN:
            bin_chunk = chunk_data
            break

    try:
        gltf = json.loads(json_chunk.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedJsonError(f"Invalid GLB JSON chunk: {exc}") from exc

    if not isinstance(gltf, dict):
        raise MalformedJsonError("Invalid GLB: JSON root is not an object")

    return GlbContainer(version=GLB_VERSION_SUPPORTED, total_length=total_length, gltf=gltf, bin_chunk=bin_chunk)


def pack_glb(json_bytes: bytes, payload: bytes) -> bytes:
    json_padding = aligned_length(len(json_bytes)) - len(json_bytes)
    if json_padding:
        json_bytes += b" " * json_padding

    bin_padding = aligned_length(len(payload)) - len(payload)
    if bin_padding:
        payload += b"\x00" * bin_padding

    total_length = GLB_HEADER_LENGTH + CHUNK_HEADER_LENGTH + len(json_bytes) + CHUNK_HEADER_LENGTH + len(payload)
    return b"".join(
        (
            write_header(total_length),
            write_chunk_header(len(json_bytes), CHUNK_TYPE_JSON),
            json_bytes,
            write_chunk_header(len(payload), CHUNK_TYPE_BIN),
            payload,
        )
    )
