"""Waveform peak computation from fully decoded PCM buffers."""

import numpy as np

from audio.peaks import PeakAggregator


def compute_peaks(
    buffers,
    length: int = 800,
    sample_step: int = 1,
    split_channels: bool = False,
):
    """Downsample whole in-memory per-channel buffers to (max, min) peak pairs.

    Entry point for callers that already hold decoded samples; file and
    stream extraction goes through ``AudioPeaks`` instead.

    Same bucket layout and seeding as the streaming path, so a file fed
    chunk by chunk through ``PeakAggregator`` gives identical output.

    Args:
        buffers: Per-channel sample arrays, or a 2-D array shaped
            (channels, num_samples). Values are float in [-1, 1].
        length: Number of output buckets (width of waveform in pixels).
        sample_step: Subsampling stride inside each bucket.
        split_channels: Return one peak array per channel.

    Returns:
        float32 array of 2*length peaks (merged), or a list of such arrays.
        Wider float input is narrowed to float32.
    """
    if isinstance(buffers, np.ndarray) and buffers.ndim == 1:
        buffers = buffers.reshape(1, -1)
    total_samples = len(buffers[0]) if len(buffers) else 0

    aggregator = PeakAggregator(
        length=length,
        sample_step=sample_step,
        total_samples=total_samples,
        split_channels=split_channels,
    )
    if len(buffers):
        aggregator.update(buffers)
    return aggregator.get()
