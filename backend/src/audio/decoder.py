"""Audio transcoding via PyAV. Writes packed s16le PCM to a raw file."""

import logging

import av
import numpy as np

logger = logging.getLogger(__name__)

_NAMED_LAYOUTS = {1: "mono", 2: "stereo"}


def layout_for_channels(num_channels: int):
    """PyAV layout for a channel count (named for mono/stereo)."""
    return _NAMED_LAYOUTS.get(num_channels, num_channels)


def _write_frames(out, frames) -> int:
    written = 0
    for frame in frames:
        # Packed s16: shape (1, samples * channels)
        arr = frame.to_ndarray()
        data = np.ascontiguousarray(arr, dtype="<i2").tobytes()
        out.write(data)
        written += len(data)
    return written


def transcode_pcm(
    path: str, raw_path: str, num_channels: int = 2, sample_rate: int = 44100
) -> dict:
    """Decode the first audio stream of a media file to interleaved s16le.

    Args:
        path: Path to the media file.
        raw_path: Destination of the raw PCM bytes (overwritten).
        num_channels: Output channel count (down/up-mixed by the resampler).
        sample_rate: Output sample rate in Hz.

    Returns:
        dict with keys:
            ok: bool
            num_bytes: int (bytes written to raw_path)
            sample_rate: int
            channels: int
            error: str (only if ok=False)
    """
    try:
        container = av.open(path)
    except (av.error.FileNotFoundError, av.error.InvalidDataError) as e:
        return {"ok": False, "error": str(e)}

    try:
        if not container.streams.audio:
            return {"ok": False, "error": "No audio stream found"}

        resampler = av.AudioResampler(
            format="s16",
            layout=layout_for_channels(num_channels),
            rate=sample_rate,
        )

        num_bytes = 0
        with open(raw_path, "wb") as out:
            for frame in container.decode(audio=0):
                num_bytes += _write_frames(out, resampler.resample(frame))
            # Flush samples buffered inside the resampler
            num_bytes += _write_frames(out, resampler.resample(None))
    except av.error.FFmpegError as e:
        logger.warning("Transcode failed for %s: %s", path, type(e).__name__)
        return {"ok": False, "error": str(e)}
    finally:
        container.close()

    logger.debug("Transcoded %s: %d bytes of s16le PCM", path, num_bytes)
    return {
        "ok": True,
        "num_bytes": num_bytes,
        "sample_rate": sample_rate,
        "channels": num_channels,
    }
