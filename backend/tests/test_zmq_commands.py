"""Tests for sticker ZMQ commands — load, generate, status, fetch, save, styles, stats."""

import base64
import io
import threading
import time

import numpy as np
import pytest
from PIL import Image

from engine.errors import EncodeFailed
from engine.shadow import SHADOW_PRESETS
from settings.schema import OutlineStyle, ShadowStyle


def _generate(client, server, settings: dict) -> dict:
    resp = client.request({"cmd": "generate", "id": "gen", "settings": settings})
    assert resp["ok"] is True, resp
    assert server.generation.wait_idle()
    return resp


def _opaque(image: np.ndarray) -> np.ndarray:
    """Stand-in cutout: the photo with every pixel kept."""
    alpha = np.full(image.shape[:2], 255, dtype=np.uint8)
    return np.dstack([image[:, :, :3], alpha])


@pytest.fixture
def loaded(zmq_client, cutout_png_path):
    resp = zmq_client.request(
        {"cmd": "load_cutout", "id": "load", "path": str(cutout_png_path)}
    )
    assert resp["ok"] is True, resp
    return resp


class TestLoad:
    def test_load_cutout(self, loaded):
        assert (loaded["width"], loaded["height"]) == (60, 60)

    def test_missing_path(self, zmq_client):
        resp = zmq_client.request({"cmd": "load_cutout", "id": "x"})
        assert resp["ok"] is False
        assert "missing path" in resp["error"]

    def test_outside_home(self, zmq_client):
        resp = zmq_client.request({"cmd": "load_cutout", "id": "x", "path": "/etc/hosts"})
        assert resp["ok"] is False
        assert "home directory" in resp["error"]

    def test_bad_extension(self, zmq_client, home_tmp_path):
        f = home_tmp_path / "notes.txt"
        f.write_text("hello")
        resp = zmq_client.request({"cmd": "load_cutout", "id": "x", "path": str(f)})
        assert resp["ok"] is False
        assert "not allowed" in resp["error"]

    def test_corrupt_image(self, zmq_client, home_tmp_path):
        f = home_tmp_path / "broken.png"
        f.write_bytes(b"\x89PNG garbage")
        resp = zmq_client.request({"cmd": "load_cutout", "id": "x", "path": str(f)})
        assert resp["ok"] is False
        assert resp["error_kind"] == "image_load_failed"

    def test_remove_background(self, zmq_client, zmq_server, home_tmp_path, monkeypatch):
        photo = home_tmp_path / "photo.jpg"
        Image.new("RGB", (40, 30), (120, 180, 90)).save(photo, format="JPEG")

        def keep_left_half(img):
            arr = np.array(img)
            arr[:, 20:] = 0
            return Image.fromarray(arr)

        monkeypatch.setattr("cutout.remover._rembg_remove", keep_left_half)
        resp = zmq_client.request(
            {"cmd": "remove_background", "id": "bg", "path": str(photo)}
        )
        assert resp["ok"] is True, resp
        assert resp["status"] == "running"
        assert zmq_server.bg_removal.wait_idle()

        status = zmq_client.request({"cmd": "bg_status", "id": "bs"})
        assert status["status"] == "complete"
        assert (status["width"], status["height"]) == (40, 30)
        assert status["progress"] == 100
        assert zmq_server.generation.has_cutout

        ping = zmq_client.request({"cmd": "ping", "id": "p"})
        assert ping["bg_progress"] == 100

    def test_progress_visible_while_removing(
        self, zmq_client, zmq_ping_client, zmq_server, home_tmp_path, monkeypatch
    ):
        photo = home_tmp_path / "photo.png"
        Image.new("RGB", (24, 16), (10, 20, 30)).save(photo, format="PNG")
        gate = threading.Event()

        def halfway_then_wait(image, progress=None):
            progress.publish(50)
            assert gate.wait(5.0)
            return _opaque(image)

        monkeypatch.setattr("cutout.remover.remove_background", halfway_then_wait)
        resp = zmq_client.request(
            {"cmd": "remove_background", "id": "bg", "path": str(photo)}
        )
        assert resp["ok"] is True, resp

        try:
            deadline = time.monotonic() + 5.0
            ping = zmq_ping_client.request({"cmd": "ping", "id": "p"})
            while ping["bg_progress"] != 50 and time.monotonic() < deadline:
                time.sleep(0.01)
                ping = zmq_ping_client.request({"cmd": "ping", "id": "p"})
            assert ping["bg_progress"] == 50

            # The command socket stays responsive too
            status = zmq_client.request({"cmd": "bg_status", "id": "bs"})
            assert status["status"] == "running"
            assert status["progress"] == 50
            assert not zmq_server.generation.has_cutout
        finally:
            gate.set()

        assert zmq_server.bg_removal.wait_idle()
        status = zmq_client.request({"cmd": "bg_status", "id": "bs"})
        assert status["status"] == "complete"
        assert (status["width"], status["height"]) == (24, 16)
        assert zmq_server.generation.has_cutout

    def test_load_cancels_pending_removal(
        self, zmq_client, zmq_server, home_tmp_path, cutout_png_path, monkeypatch
    ):
        photo = home_tmp_path / "photo.png"
        Image.new("RGB", (24, 16), (10, 20, 30)).save(photo, format="PNG")
        gate = threading.Event()

        def wait_for_gate(image, progress=None):
            assert gate.wait(5.0)
            return _opaque(image)

        monkeypatch.setattr("cutout.remover.remove_background", wait_for_gate)
        zmq_client.request({"cmd": "remove_background", "id": "bg", "path": str(photo)})
        resp = zmq_client.request(
            {"cmd": "load_cutout", "id": "load", "path": str(cutout_png_path)}
        )
        assert resp["ok"] is True
        gate.set()
        assert zmq_server.bg_removal.wait_idle()

        status = zmq_client.request({"cmd": "bg_status", "id": "bs"})
        assert status["status"] == "cancelled"
        # The directly loaded 60x60 cutout is still the session source
        _generate(zmq_client, zmq_server, {"outlineWidth": 0})
        assert zmq_client.request({"cmd": "fetch_sticker", "id": "f"})["width"] == 68

    def test_bg_status_idle(self, zmq_client):
        resp = zmq_client.request({"cmd": "bg_status", "id": "bs"})
        assert resp["ok"] is True
        assert resp["status"] == "idle"
        assert resp["progress"] == 0


class TestGenerate:
    def test_generate_without_cutout(self, zmq_client):
        resp = zmq_client.request({"cmd": "generate", "id": "g", "settings": {}})
        assert resp["ok"] is False
        assert "No cutout loaded" in resp["error"]

    def test_invalid_settings(self, zmq_client, loaded):
        resp = zmq_client.request(
            {"cmd": "generate", "id": "g", "settings": {"outlineWidth": -3}}
        )
        assert resp["ok"] is False
        assert "Invalid settings" in resp["error"]

    def test_huge_int_setting_is_client_error(self, zmq_client, loaded):
        resp = zmq_client.request(
            {"cmd": "generate", "id": "g", "settings": {"outlineWidth": 10**400}}
        )
        assert resp["ok"] is False
        assert "Invalid settings" in resp["error"]

    def test_generate_and_fetch(self, zmq_client, zmq_server, loaded):
        gen = _generate(
            zmq_client, zmq_server, {"outlineWidth": 8, "outlineColor": "#ef4444"}
        )

        status = zmq_client.request({"cmd": "generation_status", "id": "s"})
        assert status["status"] == "complete"
        assert status["live_seq"] == gen["seq"]

        resp = zmq_client.request({"cmd": "fetch_sticker", "id": "f"})
        assert resp["ok"] is True
        assert resp["seq"] == gen["seq"]
        # 60 + 2 * 12
        assert (resp["width"], resp["height"]) == (84, 84)
        img = Image.open(io.BytesIO(base64.b64decode(resp["png_data"])))
        assert img.mode == "RGBA"
        arr = np.array(img)
        # Left edge of the outline ring around the disc
        assert tuple(arr[42, 14]) == (239, 68, 68, 255)
        # Disc itself drawn on top
        assert tuple(arr[42, 42]) == (30, 60, 220, 255)

    def test_latest_request_wins(self, zmq_client, zmq_server, loaded):
        zmq_client.request({"cmd": "generate", "id": "a", "settings": {"outlineWidth": 2}})
        last = _generate(zmq_client, zmq_server, {"outlineWidth": 10})
        resp = zmq_client.request({"cmd": "fetch_sticker", "id": "f"})
        assert resp["seq"] == last["seq"]
        assert resp["width"] == 60 + 2 * 14

    def test_error_kind_in_status(self, zmq_client, zmq_server, loaded, monkeypatch):
        def fail(*args, **kwargs):
            raise EncodeFailed("PNG encode failed: test")

        monkeypatch.setattr("engine.generation.generate_sticker", fail)
        _generate(zmq_client, zmq_server, {})
        status = zmq_client.request({"cmd": "generation_status", "id": "s"})
        assert status["status"] == "error"
        assert status["error_kind"] == "encode_failed"

    def test_fetch_without_sticker(self, zmq_client):
        resp = zmq_client.request({"cmd": "fetch_sticker", "id": "f"})
        assert resp["ok"] is False
        assert resp["error"] == "no sticker available"

    def test_released_output_not_fetched(self, zmq_client, zmq_server, loaded):
        _generate(zmq_client, zmq_server, {})
        # Same object a racing commit would release between two reads
        zmq_server.generation.live.release()
        resp = zmq_client.request({"cmd": "fetch_sticker", "id": "f"})
        assert resp["ok"] is False
        assert resp["error"] == "no sticker available"
        assert "png_data" not in resp

    def test_reload_drops_sticker(self, zmq_client, zmq_server, loaded, cutout_png_path):
        _generate(zmq_client, zmq_server, {})
        zmq_client.request(
            {"cmd": "load_cutout", "id": "again", "path": str(cutout_png_path)}
        )
        resp = zmq_client.request({"cmd": "fetch_sticker", "id": "f"})
        assert resp["ok"] is False


class TestSave:
    def test_save_sticker(self, zmq_client, zmq_server, loaded, home_tmp_path):
        _generate(zmq_client, zmq_server, {"shadowStyle": "soft"})
        out = home_tmp_path / "sticker.png"
        resp = zmq_client.request({"cmd": "save_sticker", "id": "sv", "path": str(out)})
        assert resp["ok"] is True
        data = out.read_bytes()
        assert resp["bytes"] == len(data)
        assert data == zmq_server.generation.live.data

    def test_save_without_sticker(self, zmq_client, home_tmp_path):
        out = home_tmp_path / "sticker.png"
        resp = zmq_client.request({"cmd": "save_sticker", "id": "sv", "path": str(out)})
        assert resp["ok"] is False
        assert not out.exists()

    def test_released_output_not_saved(
        self, zmq_client, zmq_server, loaded, home_tmp_path
    ):
        _generate(zmq_client, zmq_server, {})
        zmq_server.generation.live.release()
        out = home_tmp_path / "sticker.png"
        resp = zmq_client.request({"cmd": "save_sticker", "id": "sv", "path": str(out)})
        assert resp["ok"] is False
        assert not out.exists()

    def test_save_wrong_extension(self, zmq_client, zmq_server, loaded, home_tmp_path):
        _generate(zmq_client, zmq_server, {})
        out = home_tmp_path / "sticker.jpg"
        resp = zmq_client.request({"cmd": "save_sticker", "id": "sv", "path": str(out)})
        assert resp["ok"] is False
        assert "not allowed" in resp["error"]


class TestStyles:
    def test_apply_wave_style(self, zmq_client):
        resp = zmq_client.request(
            {
                "cmd": "apply_style",
                "id": "st",
                "style": "chaotic",
                "settings": {"outlineWidth": 12, "masterAmp": 9},
            }
        )
        assert resp["ok"] is True
        s = resp["settings"]
        assert s["outlineStyle"] == "chaotic"
        assert s["outlineWidth"] == 12.0
        assert s["masterAmp"] == 3.0
        assert s["wave3"] == {"freq": 17.0, "amp": 0.8}

    def test_apply_solid_keeps_waves(self, zmq_client):
        wave1 = {"freq": 6.0, "amp": 2.5}
        resp = zmq_client.request(
            {
                "cmd": "apply_style",
                "id": "st",
                "style": "solid",
                "settings": {"outlineStyle": "wavy", "wave1": wave1},
            }
        )
        assert resp["settings"]["outlineStyle"] == "solid"
        assert resp["settings"]["wave1"] == wave1

    def test_apply_unknown_style(self, zmq_client):
        resp = zmq_client.request({"cmd": "apply_style", "id": "st", "style": "sparkly"})
        assert resp["ok"] is False

    def test_list_styles(self, zmq_client):
        resp = zmq_client.request({"cmd": "list_styles", "id": "ls"})
        assert resp["ok"] is True
        assert resp["outline_styles"] == [s.value for s in OutlineStyle]
        assert resp["shadow_styles"] == [s.value for s in ShadowStyle]
        assert set(resp["wave_presets"]) == {"wobbly", "chaotic", "wavy"}
        assert resp["shadows"]["float"]["offsetY"] == SHADOW_PRESETS[ShadowStyle.FLOAT].offset_y
        assert resp["defaults"]["outlineWidth"] == 8.0


class TestStats:
    def test_stage_stats_and_flush(self, zmq_client, zmq_server, loaded):
        _generate(zmq_client, zmq_server, {})
        resp = zmq_client.request({"cmd": "stage_stats", "id": "ss"})
        assert resp["ok"] is True
        assert resp["stats"]["dilate"]["samples"] >= 1
        assert "encode" in resp["stats"]

        assert zmq_client.request({"cmd": "flush_state", "id": "fl"})["ok"] is True
        resp = zmq_client.request({"cmd": "stage_stats", "id": "ss"})
        assert resp["stats"] == {}
