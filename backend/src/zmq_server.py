import base64
import json
import logging
import time
import uuid
from pathlib import Path

import sentry_sdk
import zmq

from cutout.remover import RemovalManager
from engine.codec import load_image
from engine.errors import StickerError
from engine.generation import GenerationManager
from engine.pipeline import flush_timing, get_stage_stats
from engine.shadow import SHADOW_PRESETS
from security import validate_image_size, validate_output_path, validate_upload
from settings import schema

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal processing error"


def _error(msg_id: str | None, message: str, kind: str | None = None) -> dict:
    resp = {"id": msg_id, "ok": False, "error": message}
    if kind is not None:
        resp["error_kind"] = kind
    return resp


class ZMQServer:
    def __init__(self):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket — health checks never queue behind commands
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)  # 4 KB limit (pings only)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token — prevents unauthorized ZMQ access from other local processes
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.generation = GenerationManager()
        self.bg_removal = RemovalManager()

    def reset_state(self):
        """Clear session state without closing sockets/context.

        Used by session-scoped test fixtures to reset between tests
        while keeping the server running.
        """
        self.bg_removal.close()
        self.bg_removal = RemovalManager()
        self.generation.close()
        self.generation = GenerationManager()
        flush_timing()

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        if message.get("_token") != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "bg_progress": self.bg_removal.progress,
            "generation": self.generation.get_status()["status"],
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        # Auth token required on all commands
        token_err = self._validate_token(message)
        if token_err:
            return _error(msg_id, token_err)

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "load_cutout":
            return self._handle_load(message, msg_id, remove_bg=False)
        elif cmd == "remove_background":
            return self._handle_load(message, msg_id, remove_bg=True)
        elif cmd == "bg_status":
            return {"id": msg_id, "ok": True, **self.bg_removal.get_status()}
        elif cmd == "generate":
            return self._handle_generate(message, msg_id)
        elif cmd == "generation_status":
            return {"id": msg_id, "ok": True, **self.generation.get_status()}
        elif cmd == "fetch_sticker":
            return self._handle_fetch_sticker(msg_id)
        elif cmd == "save_sticker":
            return self._handle_save_sticker(message, msg_id)
        elif cmd == "apply_style":
            return self._handle_apply_style(message, msg_id)
        elif cmd == "list_styles":
            return self._handle_list_styles(msg_id)
        elif cmd == "stage_stats":
            return {"id": msg_id, "ok": True, "stats": get_stage_stats()}
        elif cmd == "flush_state":
            flush_timing()
            return {"id": msg_id, "ok": True}
        else:
            return _error(msg_id, f"unknown: {cmd}")

    def _handle_load(self, message: dict, msg_id: str | None, remove_bg: bool) -> dict:
        path = message.get("path")
        if not path:
            return _error(msg_id, "missing path")

        # SEC-1: Validate upload
        errors = validate_upload(path)
        if errors:
            return _error(msg_id, "; ".join(errors))

        try:
            image = load_image(path)
            h, w = image.shape[:2]
            # SEC-2: Pixel cap
            errors = validate_image_size(w, h)
            if errors:
                return _error(msg_id, "; ".join(errors))

            if remove_bg:
                # Cutout lands in the generation manager when the worker finishes
                self.bg_removal.start(image, self._load_removed_cutout)
                return {"id": msg_id, "ok": True, "status": "running"}

            # A direct load wins over any removal still in flight
            self.bg_removal.cancel()
            width, height = self.generation.load_cutout(image)
            return {"id": msg_id, "ok": True, "width": width, "height": height}
        except StickerError as e:
            logger.warning("Load failed (%s)", e.kind)
            return _error(msg_id, str(e), e.kind)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Load handler error: %s", type(e).__name__)
            return _error(msg_id, INTERNAL_ERROR)

    def _load_removed_cutout(self, cutout):
        self.generation.load_cutout(cutout)

    def _handle_generate(self, message: dict, msg_id: str | None) -> dict:
        raw = message.get("settings", {})
        try:
            settings = schema.from_dict(raw)
        except ValueError as e:
            return _error(msg_id, str(e))

        try:
            seq = self.generation.submit(settings)
        except RuntimeError as e:
            return _error(msg_id, str(e))
        return {"id": msg_id, "ok": True, "seq": seq}

    def _handle_fetch_sticker(self, msg_id: str | None) -> dict:
        snapshot = self.generation.snapshot()
        if snapshot is None:
            return _error(msg_id, "no sticker available")
        seq, width, height, data = snapshot
        return {
            "id": msg_id,
            "ok": True,
            "seq": seq,
            "width": width,
            "height": height,
            "png_data": base64.b64encode(data).decode("ascii"),
        }

    def _handle_save_sticker(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return _error(msg_id, "missing path")

        errors = validate_output_path(path)
        if errors:
            return _error(msg_id, "; ".join(errors))

        snapshot = self.generation.snapshot()
        if snapshot is None:
            return _error(msg_id, "no sticker available")

        data = snapshot[3]
        try:
            Path(path).write_bytes(data)
            return {"id": msg_id, "ok": True, "bytes": len(data)}
        except OSError as e:
            sentry_sdk.capture_exception(e)
            logger.error("Save sticker error: %s", type(e).__name__)
            return _error(msg_id, INTERNAL_ERROR)

    def _handle_apply_style(self, message: dict, msg_id: str | None) -> dict:
        style = message.get("style")
        try:
            outline_style = schema.OutlineStyle(style)
            settings = schema.from_dict(message.get("settings", {}))
        except ValueError as e:
            return _error(msg_id, str(e))
        updated = schema.with_style(settings, outline_style)
        return {"id": msg_id, "ok": True, "settings": schema.to_dict(updated)}

    def _handle_list_styles(self, msg_id: str | None) -> dict:
        presets = {
            style.value: {
                "wave1": {"freq": p["wave1"].freq, "amp": p["wave1"].amp},
                "wave2": {"freq": p["wave2"].freq, "amp": p["wave2"].amp},
                "wave3": {"freq": p["wave3"].freq, "amp": p["wave3"].amp},
                "masterAmp": p["master_amp"],
            }
            for style, p in schema.WAVE_PRESETS.items()
        }
        shadows = {
            style.value: {
                "blur": s.blur,
                "offsetX": s.offset_x,
                "offsetY": s.offset_y,
                "color": list(s.color),
            }
            for style, s in SHADOW_PRESETS.items()
        }
        return {
            "id": msg_id,
            "ok": True,
            "outline_styles": [s.value for s in schema.OutlineStyle],
            "shadow_styles": [s.value for s in schema.ShadowStyle],
            "wave_presets": presets,
            "shadows": shadows,
            "defaults": schema.to_dict(schema.DEFAULT_SETTINGS),
        }

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Handle ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    message = json.loads(self.ping_socket.recv())
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(_error(msg_id, token_err))
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except json.JSONDecodeError:
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break  # socket state is unrecoverable

            # Handle main command socket
            if self.socket in events:
                try:
                    message = json.loads(self.socket.recv())
                except json.JSONDecodeError:
                    # MUST send reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": INTERNAL_ERROR}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.bg_removal.close()
        self.generation.close()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
