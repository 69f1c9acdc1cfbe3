"""Peak extraction from media files.

The source is transcoded to a raw s16le file in a private temp directory.
Its size fixes ``total_samples`` up front, then the file is streamed in
fixed-size chunks through ``PCMDecoder`` into ``PeakAggregator``, so memory
stays bounded by the chunk size and the output width.
"""

import json
import logging
import os
import shutil
import tempfile
import time

from audio.decoder import transcode_pcm
from audio.errors import DecodeError, InvalidConfig
from audio.pcm import PCMDecoder
from audio.peaks import PeakAggregator

logger = logging.getLogger(__name__)

# Read size for the raw PCM file
CHUNK_SIZE = 64 * 1024

DEFAULT_OPTIONS = {
    "num_channels": 2,
    "sample_rate": 44100,
    "width": 800,
    "precision": 5,
}


def peaks_to_json(peaks) -> list:
    """Convert merged or split peaks to nested lists for JSON transport."""
    if isinstance(peaks, list):
        return [p.tolist() for p in peaks]
    return peaks.tolist()


class AudioPeaks:
    """Extracts waveform peaks from an audio (or A/V) file.

    Stereo and wider sources produce split peaks, one array per channel;
    mono produces a single merged array.
    """

    def __init__(
        self,
        num_channels: int = DEFAULT_OPTIONS["num_channels"],
        sample_rate: int = DEFAULT_OPTIONS["sample_rate"],
        width: int = DEFAULT_OPTIONS["width"],
        precision: int = DEFAULT_OPTIONS["precision"],
        chunk_size: int = CHUNK_SIZE,
    ):
        for name, value in (
            ("num_channels", num_channels),
            ("sample_rate", sample_rate),
            ("width", width),
            ("precision", precision),
            ("chunk_size", chunk_size),
        ):
            if value <= 0:
                raise InvalidConfig(f"{name} must be positive, got {value}")

        self.num_channels = num_channels
        self.sample_rate = sample_rate
        self.width = width
        self.precision = precision
        self.chunk_size = chunk_size

        self.decoder: PCMDecoder | None = None
        self.peaks: PeakAggregator | None = None
        self.total_samples = 0

    @property
    def split_channels(self) -> bool:
        return self.num_channels >= 2

    def get_peaks(self, source_path: str, output_path: str | None = None):
        """Extract peaks and optionally write them to ``output_path`` as JSON.

        Raises:
            TypeError: source_path is not a string.
            FileNotFoundError: source_path does not exist.
            DecodeError: the source has no decodable audio.
        """
        if not isinstance(source_path, str):
            raise TypeError("source_path param is not valid")
        if not os.path.exists(source_path):
            raise FileNotFoundError(f"File {source_path} not found")

        peaks = self.extract_peaks(source_path)
        if output_path:
            with open(output_path, "w") as f:
                json.dump(peaks_to_json(peaks), f)
            logger.info("Wrote peaks JSON: %s", output_path)
        return peaks

    def extract_peaks(self, source_path: str):
        """Run the transcode + streaming aggregation. Returns ``get()`` output."""
        t0 = time.monotonic()
        tmp_dir = tempfile.mkdtemp(prefix="audiopeaks-")
        try:
            raw_path = os.path.join(tmp_dir, "audio.raw")
            result = transcode_pcm(
                source_path,
                raw_path,
                num_channels=self.num_channels,
                sample_rate=self.sample_rate,
            )
            if not result["ok"]:
                raise DecodeError(result["error"])

            size = os.stat(raw_path).st_size
            self.total_samples = (size // 2) // self.num_channels
            logger.info(
                "Streaming %d bytes of PCM (%d samples/ch)", size, self.total_samples
            )
            self.decoder = PCMDecoder(self.num_channels)
            self.peaks = PeakAggregator(
                length=self.width,
                sample_step=self.precision,
                total_samples=self.total_samples,
                split_channels=self.split_channels,
            )

            with open(raw_path, "rb") as f:
                while True:
                    chunk = f.read(self.chunk_size)
                    if not chunk:
                        break
                    self.feed(chunk)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        logger.info(
            "Extracted %d peaks from %d samples x %d ch in %.1fms",
            self.width,
            self.total_samples,
            self.num_channels,
            (time.monotonic() - t0) * 1000,
        )
        return self.peaks.get()

    def feed(self, chunk: bytes) -> None:
        """Decode one raw chunk and push it into the aggregator."""
        samples = self.decoder.decode_chunk(chunk)
        self.peaks.update(samples)
