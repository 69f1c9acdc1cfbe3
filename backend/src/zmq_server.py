import collections
import json
import logging
import time
import uuid

import sentry_sdk
import zmq

from audio.errors import DecodeError, InvalidConfig
from audio.extract import DEFAULT_OPTIONS, AudioPeaks, peaks_to_json
from security import validate_output_path, validate_upload

logger = logging.getLogger(__name__)

MAX_WIDTH = 8192
MAX_PRECISION = 10_000
MAX_CHANNELS = 8


def _clamp(value, low: int, high: int) -> int:
    return max(low, min(int(value), high))


class ZMQServer:
    def __init__(self):
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket, answers while a long extraction runs
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token prevents unauthorized ZMQ access from other local processes
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.last_extract_ms = 0.0
        # Peak cache keyed by (path, width, precision, channels, sample_rate)
        self._peaks_cache: collections.OrderedDict[tuple, dict] = (
            collections.OrderedDict()
        )
        self._max_peaks_cache = 10

    def reset_state(self):
        """Clear accumulated state without closing sockets/context.

        Used by session-scoped test fixtures between tests.
        """
        self._peaks_cache.clear()
        self.last_extract_ms = 0.0

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
            "last_extract_ms": self.last_extract_ms,
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "peaks":
            return self._handle_peaks(message, msg_id)
        elif cmd == "clear_cache":
            cleared = len(self._peaks_cache)
            self._peaks_cache.clear()
            return {"id": msg_id, "ok": True, "cleared": cleared}
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_peaks(self, message: dict, msg_id: str | None) -> dict:
        path = message.get("path")
        if not path:
            return {"id": msg_id, "ok": False, "error": "missing path"}

        errors = validate_upload(path)
        output_path = message.get("output_path")
        if output_path:
            errors += validate_output_path(output_path)
        if errors:
            return {"id": msg_id, "ok": False, "error": "; ".join(errors)}

        try:
            width = _clamp(message.get("width", DEFAULT_OPTIONS["width"]), 1, MAX_WIDTH)
            precision = _clamp(
                message.get("precision", DEFAULT_OPTIONS["precision"]), 1, MAX_PRECISION
            )
            channels = _clamp(
                message.get("channels", DEFAULT_OPTIONS["num_channels"]),
                1,
                MAX_CHANNELS,
            )
            sample_rate = int(message.get("sample_rate", DEFAULT_OPTIONS["sample_rate"]))
        except (TypeError, ValueError):
            return {"id": msg_id, "ok": False, "error": "invalid peak options"}

        cache_key = (path, width, precision, channels, sample_rate)
        if cache_key in self._peaks_cache and not output_path:
            self._peaks_cache.move_to_end(cache_key)
            return {"id": msg_id, "ok": True, **self._peaks_cache[cache_key], "cached": True}

        t0 = time.monotonic()
        try:
            extractor = AudioPeaks(
                num_channels=channels,
                sample_rate=sample_rate,
                width=width,
                precision=precision,
            )
            peaks = extractor.get_peaks(path, output_path)
        except InvalidConfig as e:
            return {"id": msg_id, "ok": False, "error": str(e)}
        except DecodeError as e:
            logger.warning("Peak extraction failed: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": str(e)}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Peaks handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}
        self.last_extract_ms = round((time.monotonic() - t0) * 1000, 1)

        result = {
            "peaks": peaks_to_json(peaks),
            "split": extractor.split_channels,
            "channels": channels,
            "width": width,
            "total_samples": extractor.total_samples,
        }
        self._peaks_cache[cache_key] = result
        # LRU eviction
        while len(self._peaks_cache) > self._max_peaks_cache:
            self._peaks_cache.popitem(last=False)

        return {"id": msg_id, "ok": True, **result, "cached": False}

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    message = json.loads(self.ping_socket.recv())
                except (json.JSONDecodeError, UnicodeDecodeError):
                    message = None
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break  # socket state is unrecoverable

                try:
                    if not isinstance(message, dict):
                        response = {"ok": False, "error": "Invalid message format"}
                    else:
                        msg_id = message.get("id")
                        token_err = self._validate_token(message)
                        if token_err:
                            response = {"id": msg_id, "ok": False, "error": token_err}
                        else:
                            response = self._make_ping_response(msg_id)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled ping error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.ping_socket.send_json(response)

            if self.socket in events:
                try:
                    message = json.loads(self.socket.recv())
                except (json.JSONDecodeError, UnicodeDecodeError):
                    # MUST send reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                if not isinstance(message, dict):
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
