"""Raw s16le PCM decoding into per-channel float32 batches.

Chunks come straight off a file or pipe read, so they are not aligned to
2-byte samples or to channel frames. A dangling low byte is carried into the
next call, and the channel rotation continues where the last chunk stopped.
"""

from dataclasses import dataclass

import numpy as np

from audio.errors import InvalidConfig

# 16-bit full scale. The 32767 variant would let -32768 fall below -1.0.
NORMALIZATION_DIVISOR = 32768.0


@dataclass(frozen=True)
class DecoderCarry:
    """State handed from one decode call to the next."""

    odd_byte: int | None = None
    rotation: int = 0


def _check_channels(num_channels: int) -> None:
    if num_channels <= 0:
        raise InvalidConfig(f"num_channels must be positive, got {num_channels}")


def decode_chunk(
    chunk: bytes, carry: DecoderCarry, num_channels: int
) -> tuple[list[np.ndarray], DecoderCarry]:
    """Decode one chunk of interleaved s16le bytes.

    Args:
        chunk: Raw bytes of any length.
        carry: Pending odd byte and channel rotation from the previous call.
        num_channels: Interleaved channel count of the stream.

    Returns:
        (samples_by_channel, carry_out) where samples_by_channel[c] is a
        float32 array of channel c's samples from this chunk, in order.
    """
    _check_channels(num_channels)

    data = memoryview(chunk).cast("B")
    if len(data) == 0:
        empty = [np.empty(0, dtype=np.float32) for _ in range(num_channels)]
        return empty, carry

    offset = 0
    head: list[int] = []
    if carry.odd_byte is not None:
        # Stored byte is the low half, first byte of this chunk the high half
        head.append(
            int.from_bytes(bytes((carry.odd_byte, data[0])), "little", signed=True)
        )
        offset = 1

    body = data[offset:]
    pairs = len(body) // 2
    ints = np.frombuffer(body, dtype="<i2", count=pairs)
    odd_byte = int(body[2 * pairs]) if len(body) % 2 else None

    if head:
        ints = np.concatenate((np.array(head, dtype=np.int16), ints))
    values = ints.astype(np.float32) / np.float32(NORMALIZATION_DIVISOR)

    # Sample k of this chunk belongs to channel (rotation + k) % num_channels
    samples = [
        values[(c - carry.rotation) % num_channels :: num_channels]
        for c in range(num_channels)
    ]
    rotation = (carry.rotation + len(values)) % num_channels
    return samples, DecoderCarry(odd_byte=odd_byte, rotation=rotation)


class PCMDecoder:
    """Stateful decoder for one s16le stream; owns the carry between chunks."""

    def __init__(self, num_channels: int):
        _check_channels(num_channels)
        self.num_channels = num_channels
        self.carry = DecoderCarry()
        self.bytes_seen = 0

    @property
    def pending_byte(self) -> int | None:
        return self.carry.odd_byte

    @property
    def rotation(self) -> int:
        return self.carry.rotation

    def decode_chunk(self, chunk: bytes) -> list[np.ndarray]:
        samples, self.carry = decode_chunk(chunk, self.carry, self.num_channels)
        self.bytes_seen += len(chunk)
        return samples

    def reset(self) -> None:
        self.carry = DecoderCarry()
        self.bytes_seen = 0
