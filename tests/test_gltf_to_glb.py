import base64
import copy
import json
import struct
import sys

import pytest

from glb_container import CHUNK_TYPE_JSON, IndexMappingError, InputNotFoundError, MalformedJsonError, ResourceNotFoundError, read_glb
from gltf_to_glb import compose_glb, convert_gltf_to_glb, convert_to_glb, main, run

ASSET = {"version": "2.0"}


def _write_gltf(directory, gltf, name="scene.gltf"):
    path = directory / name
    path.write_text(json.dumps(gltf), encoding="utf-8")
    return path


def _view_bytes(container, index):
    view = container.gltf["bufferViews"][index]
    start = view.get("byteOffset", 0)
    return container.bin_chunk[start : start + view["byteLength"]]


def test_external_buffer_and_image(tmp_path):
    (tmp_path / "scene_data.bin").write_bytes(b"\x01\x02\x03\x04\x05\x06")
    (tmp_path / "albedo.png").write_bytes(b"\x89PNG!")
    gltf = {
        "asset": ASSET,
        "buffers": [{"uri": "scene_data.bin", "byteLength": 6}],
        "bufferViews": [{"buffer": 0, "byteOffset": 0, "byteLength": 6}],
        "accessors": [{"bufferView": 0}],
        "images": [{"uri": "albedo.png", "name": "albedo"}],
    }
    source = _write_gltf(tmp_path, gltf)

    output = convert_gltf_to_glb(source, tmp_path / "scene.glb")

    data = output.read_bytes()
    assert struct.unpack_from("<4sII", data, 0) == (b"glTF", 2, len(data))
    assert len(data) % 4 == 0

    container = read_glb(data)
    assert container.gltf["buffers"] == [{"byteLength": 16}]
    assert container.gltf["bufferViews"] == [
        {"buffer": 0, "byteOffset": 0, "byteLength": 6},
        {"buffer": 0, "byteOffset": 8, "byteLength": 5},
    ]
    assert container.gltf["images"] == [{"name": "albedo", "bufferView": 1, "mimeType": "image/png"}]
    assert len(container.bin_chunk) == 16
    assert _view_bytes(container, 0) == b"\x01\x02\x03\x04\x05\x06"
    assert _view_bytes(container, 1) == b"\x89PNG!"


def test_json_chunk_is_space_padded(tmp_path):
    data = compose_glb({"asset": ASSET, "a": "x"}, tmp_path)
    json_length, json_type = struct.unpack_from("<II", data, 12)
    assert json_type == CHUNK_TYPE_JSON
    assert json_length % 4 == 0
    json_chunk = data[20 : 20 + json_length]
    stripped = json_chunk.rstrip(b" ")
    assert stripped.endswith(b"}")
    assert len(json_chunk) - len(stripped) < 4
    assert json.loads(stripped) == {"asset": ASSET, "a": "x", "buffers": [{"byteLength": 0}]}


def test_multiple_buffers_are_merged(tmp_path):
    (tmp_path / "a.bin").write_bytes(b"abc")
    (tmp_path / "b.bin").write_bytes(b"WXYZ")
    gltf = {
        "asset": ASSET,
        "buffers": [{"uri": "a.bin", "byteLength": 3}, {"uri": "b.bin", "byteLength": 4}],
        "bufferViews": [
            {"buffer": 1, "byteOffset": 0, "byteLength": 4},
            {"buffer": 0, "byteOffset": 1, "byteLength": 2},
        ],
    }

    container = read_glb(compose_glb(gltf, tmp_path))

    assert container.gltf["buffers"] == [{"byteLength": 8}]
    assert container.gltf["bufferViews"] == [
        {"buffer": 0, "byteOffset": 4, "byteLength": 4},
        {"buffer": 0, "byteOffset": 1, "byteLength": 2},
    ]
    assert _view_bytes(container, 0) == b"WXYZ"
    assert _view_bytes(container, 1) == b"bc"


def test_data_uri_buffer(tmp_path):
    payload = bytes(range(10))
    gltf = {
        "asset": ASSET,
        "buffers": [{"uri": "data:application/octet-stream;base64," + base64.b64encode(payload).decode("ascii"), "byteLength": 10}],
        "bufferViews": [{"buffer": 0, "byteOffset": 2, "byteLength": 8}],
    }

    container = read_glb(compose_glb(gltf, tmp_path))

    assert container.gltf["buffers"] == [{"byteLength": 12}]
    assert _view_bytes(container, 0) == payload[2:]


def test_unused_placeholder_buffer_is_skipped(tmp_path):
    (tmp_path / "real.bin").write_bytes(b"REAL")
    gltf = {
        "asset": ASSET,
        "buffers": [{"byteLength": 0}, {"uri": "real.bin", "byteLength": 4}],
        "bufferViews": [{"buffer": 1, "byteOffset": 0, "byteLength": 4}],
    }

    container = read_glb(compose_glb(gltf, tmp_path))

    assert container.gltf["buffers"] == [{"byteLength": 4}]
    assert container.gltf["bufferViews"] == [{"buffer": 0, "byteOffset": 0, "byteLength": 4}]
    assert container.bin_chunk == b"REAL"


def test_buffer_view_on_placeholder_buffer_fails(tmp_path):
    gltf = {
        "asset": ASSET,
        "buffers": [{"byteLength": 4}],
        "bufferViews": [{"buffer": 0, "byteLength": 4}],
    }
    with pytest.raises(IndexMappingError, match=r"bufferViews\[0\]"):
        compose_glb(gltf, tmp_path)


def test_shaders_and_extension_payloads_are_embedded(tmp_path):
    (tmp_path / "lit.vert").write_bytes(b"void main(){}")
    (tmp_path / "clip.wav").write_bytes(b"RIFF....WAVE")
    gltf = {
        "asset": ASSET,
        "shaders": [{"type": 35633, "uri": "lit.vert"}],
        "extensions": {"EXT_audio": {"sounds": [{"uri": "clip.wav"}, {"name": "inline"}], "gain": 1.0}},
    }

    container = read_glb(compose_glb(gltf, tmp_path))

    shader = container.gltf["shaders"][0]
    assert shader == {"type": 35633, "bufferView": 0, "mimeType": "text/plain"}
    sound, inline = container.gltf["extensions"]["EXT_audio"]["sounds"]
    assert sound == {"bufferView": 1, "mimeType": "audio/wav"}
    assert inline == {"name": "inline"}
    assert _view_bytes(container, 0) == b"void main(){}"
    assert _view_bytes(container, 1) == b"RIFF....WAVE"
    for view in container.gltf["bufferViews"]:
        assert view["byteOffset"] % 4 == 0


def test_explicit_mime_type_survives_unknown_extension(tmp_path):
    (tmp_path / "scene_img0.bin").write_bytes(b"custom")
    gltf = {"asset": ASSET, "images": [{"uri": "scene_img0.bin", "mimeType": "image/x-custom"}]}

    container = read_glb(compose_glb(gltf, tmp_path))

    assert container.gltf["images"] == [{"mimeType": "image/x-custom", "bufferView": 0}]


def test_undecodable_image_uri_is_dropped(tmp_path):
    gltf = {"asset": ASSET, "images": [{"uri": "data:image/png,not-base64-and-no-semicolon", "name": "broken"}]}

    container = read_glb(compose_glb(gltf, tmp_path))

    assert container.gltf["images"] == [{"name": "broken"}]
    assert "bufferViews" not in container.gltf
    assert container.gltf["buffers"] == [{"byteLength": 0}]


def test_missing_external_file_is_fatal(tmp_path):
    gltf = {"asset": ASSET, "images": [{"uri": "gone.png"}]}
    source = _write_gltf(tmp_path, gltf)

    with pytest.raises(ResourceNotFoundError, match=r"images\[0\]"):
        convert_gltf_to_glb(source, tmp_path / "scene.glb")
    assert not (tmp_path / "scene.glb").exists()


def test_existing_output_is_kept_when_conversion_fails(tmp_path):
    gltf = {"asset": ASSET, "buffers": [{"uri": "gone.bin", "byteLength": 4}]}
    source = _write_gltf(tmp_path, gltf)
    (tmp_path / "scene.glb").write_bytes(b"previous")

    with pytest.raises(ResourceNotFoundError, match=r"buffers\[0\]"):
        convert_gltf_to_glb(source, tmp_path / "scene.glb")
    assert (tmp_path / "scene.glb").read_bytes() == b"previous"


def test_convert_to_glb_does_not_mutate_document(tmp_path):
    (tmp_path / "a.png").write_bytes(b"png")
    gltf = {"asset": ASSET, "images": [{"uri": "a.png"}]}
    snapshot = copy.deepcopy(gltf)

    output = convert_to_glb(gltf, tmp_path / "scene.gltf", tmp_path / "out" / "scene.glb")

    assert gltf == snapshot
    assert read_glb(output.read_bytes()).gltf["images"] == [{"bufferView": 0, "mimeType": "image/png"}]


def test_malformed_json(tmp_path):
    source = tmp_path / "scene.gltf"
    source.write_text("{ not json", encoding="utf-8")
    with pytest.raises(MalformedJsonError):
        convert_gltf_to_glb(source, tmp_path / "scene.glb")


def test_missing_input(tmp_path):
    with pytest.raises(InputNotFoundError):
        convert_gltf_to_glb(tmp_path / "scene.gltf", tmp_path / "scene.glb")


def test_cli_default_output(tmp_path):
    (tmp_path / "scene.bin").write_bytes(b"\x01\x02\x03")
    source = _write_gltf(
        tmp_path,
        {
            "asset": ASSET,
            "buffers": [{"uri": "scene.bin", "byteLength": 3}],
            "bufferViews": [{"buffer": 0, "byteLength": 3}],
        },
    )

    assert main([str(source)]) == 0
    container = read_glb((tmp_path / "scene.glb").read_bytes())
    assert container.gltf["buffers"] == [{"byteLength": 4}]
    assert _view_bytes(container, 0) == b"\x01\x02\x03"


def test_cli_explicit_output(tmp_path):
    source = _write_gltf(tmp_path, {"asset": ASSET})

    assert main([str(source), "--output", str(tmp_path / "packed.glb")]) == 0
    assert read_glb((tmp_path / "packed.glb").read_bytes()).gltf["buffers"] == [{"byteLength": 0}]


def test_cli_reports_errors_with_exit_status_2(tmp_path, monkeypatch, capsys):
    source = _write_gltf(tmp_path, {"asset": ASSET, "images": [{"uri": "missing.png"}]})
    monkeypatch.setattr(sys, "argv", ["gltf-to-glb", str(source)])

    with pytest.raises(SystemExit) as excinfo:
        run()

    assert excinfo.value.code == 2
    assert capsys.readouterr().err.startswith("error: images[0]: file not found: missing.png")
    assert not (tmp_path / "scene.glb").exists()
