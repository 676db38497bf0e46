from __future__ import annotations

import json
import struct
from typing import Any

import pytest


def build_glb(gltf: dict[str, Any], bin_chunk: bytes | None = None, *, magic: bytes = b"glTF", version: int = 2) -> bytes:
    json_bytes = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
    body = struct.pack("<II", len(json_bytes), 0x4E4F534A) + json_bytes
    if bin_chunk is not None:
        padded = bin_chunk + b"\x00" * ((4 - len(bin_chunk) % 4) % 4)
        body += struct.pack("<II", len(padded), 0x004E4942) + padded
    return struct.pack("<4sII", magic, version, 12 + len(body)) + body


@pytest.fixture
def make_glb():
    return build_glb
