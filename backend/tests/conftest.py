import shutil
import threading
import time
import uuid
import wave
from pathlib import Path

import numpy as np
import pytest
import zmq

from zmq_server import ZMQServer


def write_wav(path, samples: np.ndarray, sample_rate: int = 44100) -> str:
    """Write int16 samples shaped (num_frames, channels) as a PCM WAV file."""
    samples = np.asarray(samples, dtype="<i2")
    if samples.ndim == 1:
        samples = samples.reshape(-1, 1)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(samples.shape[1])
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(samples.tobytes())
    return str(path)


def sine_int16(num_frames: int, channels: int, freq: float = 440.0, sr: int = 44100):
    """Deterministic int16 test signal; channel c is scaled by 1/(c+1)."""
    t = np.arange(num_frames, dtype=np.float64) / sr
    base = np.sin(2 * np.pi * freq * t) * 0.8
    cols = [base / (c + 1) for c in range(channels)]
    return (np.stack(cols, axis=1) * 32767).astype(np.int16)


def _wait_for_server(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it responds or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.ping_port}")
    deadline = time.monotonic() + timeout
    alive = False
    while time.monotonic() < deadline:
        try:
            sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
            resp = sock.recv_json()
            if resp.get("status") == "alive":
                alive = True
                break
        except zmq.Again:
            # REQ socket is stuck after a timeout; start over
            sock.close()
            sock = ctx.socket(zmq.REQ)
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.RCVTIMEO, 500)
            sock.connect(f"tcp://127.0.0.1:{srv.ping_port}")
            time.sleep(0.05)
    sock.close()
    ctx.term()
    return alive


@pytest.fixture(scope="session")
def _zmq_server_session():
    """Start ONE ZMQ server per session."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    # Wait for poller timeout cycle to complete
    time.sleep(0.6)


@pytest.fixture
def zmq_server(_zmq_server_session):
    """Function-scoped wrapper: resets state between tests, shares session server."""
    _zmq_server_session.reset_state()
    _zmq_server_session.running = True
    yield _zmq_server_session


@pytest.fixture
def zmq_server_disposable():
    """Disposable server for shutdown tests that destroy sockets/context."""
    srv = ZMQServer()
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    time.sleep(0.6)


class AuthenticatedZmqClient:
    """Wraps a ZMQ REQ socket and auto-injects the auth token."""

    def __init__(self, sock: zmq.Socket, token: str):
        self._sock = sock
        self._token = token

    def send_json(self, msg: dict) -> None:
        msg["_token"] = self._token
        self._sock.send_json(msg)

    def recv_json(self) -> dict:
        return self._sock.recv_json()

    def request(self, msg: dict) -> dict:
        self.send_json(msg)
        return self.recv_json()

    def close(self) -> None:
        self._sock.close()


@pytest.fixture
def zmq_client(zmq_server):
    """REQ socket connected to the test server (auto-injects auth token)."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture
def zmq_ping_client(zmq_server):
    """REQ socket connected to the test server's ping port."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.ping_port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close()
    ctx.term()


@pytest.fixture
def home_tmp_path():
    """tmp_path equivalent under ~/ for tests that go through validate_upload."""
    base = Path.home() / ".cache" / "audiopeaks" / "test-tmp"
    base.mkdir(parents=True, exist_ok=True)
    d = base / f"test_{uuid.uuid4().hex[:8]}"
    d.mkdir()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def wav_factory(home_tmp_path):
    """Write int16 samples to a WAV under home_tmp_path; returns its path."""

    def _make(name: str, samples: np.ndarray, sample_rate: int = 44100) -> str:
        return write_wav(home_tmp_path / name, samples, sample_rate)

    return _make


@pytest.fixture
def stereo_samples():
    """0.25s of stereo int16 sine, shaped (frames, 2)."""
    return sine_int16(11025, 2)


@pytest.fixture
def stereo_wav_path(home_tmp_path, stereo_samples):
    return write_wav(home_tmp_path / "stereo.wav", stereo_samples)


@pytest.fixture
def mono_samples():
    return sine_int16(8000, 1, freq=220.0)


@pytest.fixture
def mono_wav_path(home_tmp_path, mono_samples):
    return write_wav(home_tmp_path / "mono.wav", mono_samples)
