"""Incremental max/min peak downsampling for waveform display.

The full timeline of ``total_samples`` samples is cut into ``length`` buckets.
Bucket ``i`` covers ``[int(i * span), int((i + 1) * span))`` with
``span = total_samples / length``; boundaries are truncated, never rounded, so
output matches peaks computed over the whole buffer in one go.

Sample batches arrive in stream order and may end anywhere, including in the
middle of a bucket. Each channel keeps a cursor so the next ``update`` resumes
the interrupted bucket exactly where it stopped.

Preconditions (caller's contract, not detected):
    - batches arrive in temporal order, every sample exactly once
    - ``get()`` is called after the final ``update``
A change of channel count between calls raises ``SequenceViolation``.
"""

import logging
from dataclasses import dataclass

import numpy as np

from audio.errors import InvalidConfig, SequenceViolation

logger = logging.getLogger(__name__)


@dataclass
class ChannelCursor:
    """Resume point for one channel between ``update`` calls."""

    bucket_index: int = 0
    consumed_up_to: int = 0
    overflow_offset: int = 0
    # Seeded at 0, not +/-inf: an all-positive bucket reports min == 0.
    # Kept for compatibility with existing peak files.
    pending_max: float = 0.0
    pending_min: float = 0.0


class PeakAggregator:
    """Streams per-channel sample batches into ``length`` (max, min) buckets.

    Args:
        length: Number of output buckets (waveform width in pixels).
        sample_step: Stride used to subsample inside a bucket (>= 1).
        total_samples: Samples per channel in the whole stream. Only used to
            place bucket boundaries.
        split_channels: ``get()`` returns one array per channel instead of
            the merged array.

    Peaks are stored as float32, the decoder's output type; float64 batches
    are narrowed when written.
    """

    def __init__(
        self,
        length: int,
        sample_step: int,
        total_samples: int,
        split_channels: bool = False,
    ):
        if length < 1:
            raise InvalidConfig(f"length must be >= 1, got {length}")
        if sample_step < 1:
            raise InvalidConfig(f"sample_step must be >= 1, got {sample_step}")
        if total_samples < 0:
            raise InvalidConfig(f"total_samples must be >= 0, got {total_samples}")

        self.length = length
        self.sample_step = sample_step
        self.total_samples = total_samples
        self.split_channels = split_channels
        self.span = total_samples / length

        self.merged_peaks = np.zeros(2 * length, dtype=np.float32)
        self.split_peaks: list[np.ndarray] = []
        self._cursors: list[ChannelCursor] = []
        self.num_channels: int | None = None

    @property
    def cursors(self) -> tuple[ChannelCursor, ...]:
        return tuple(self._cursors)

    @property
    def exhausted(self) -> bool:
        """True once every channel has finalized its last bucket."""
        return self.num_channels is not None and all(
            cur.bucket_index >= self.length for cur in self._cursors
        )

    def _init_channels(self, channels: int) -> None:
        self.num_channels = channels
        self._cursors = [ChannelCursor() for _ in range(channels)]
        self.split_peaks = [
            np.zeros(2 * self.length, dtype=np.float32) for _ in range(channels)
        ]

    def update(self, samples_by_channel) -> None:
        """Consume the next batch of samples for every channel.

        Args:
            samples_by_channel: Sequence with one 1-D float array per channel,
                holding the samples that follow the previous batch.
        """
        channels = len(samples_by_channel)
        if self.num_channels is None:
            self._init_channels(channels)
        elif channels != self.num_channels:
            raise SequenceViolation(
                f"expected {self.num_channels} channels, got {channels}"
            )

        for c in range(channels):
            chan = np.asarray(samples_by_channel[c])
            self._update_channel(c, chan)

    def _update_channel(self, c: int, chan: np.ndarray) -> None:
        cur = self._cursors[c]
        peaks = self.split_peaks[c]
        merged = self.merged_peaks
        step = self.sample_step
        last = len(chan) - 1

        for i in range(cur.bucket_index, self.length):
            start = max(int(i * self.span), cur.consumed_up_to)
            end = int((i + 1) * self.span)
            hi = cur.pending_max
            lo = cur.pending_min

            # Stream index j maps to chunk index j - consumed_up_to + overflow
            first = start - cur.consumed_up_to + cur.overflow_offset
            wanted = len(range(start, end, step))
            available = 0 if first > last else (last - first) // step + 1
            taken = min(wanted, available)

            if taken > 0:
                window = chan[first : first + taken * step : step]
                hi = max(hi, float(window.max()))
                lo = min(lo, float(window.min()))

            if taken < wanted:
                # Ran off the end of this chunk inside bucket i
                cur.bucket_index = i
                cur.overflow_offset = first + taken * step - last - 1
                cur.consumed_up_to = start + taken * step
                cur.pending_max = hi
                cur.pending_min = lo
                return

            cur.pending_max = 0.0
            cur.pending_min = 0.0

            peaks[2 * i] = hi
            peaks[2 * i + 1] = lo

            if c == 0 or hi > merged[2 * i]:
                merged[2 * i] = hi
            if c == 0 or lo < merged[2 * i + 1]:
                merged[2 * i + 1] = lo

        # Exhausted; later calls skip this channel
        cur.bucket_index = self.length

    def get(self):
        """Return split peaks (list of arrays) or the merged peak array.

        Slot ``2i`` holds bucket i's max, slot ``2i + 1`` its min. Buckets that
        were never completed read as (0, 0).
        """
        return self.split_peaks if self.split_channels else self.merged_peaks
