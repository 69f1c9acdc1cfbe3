"""Command-line peak extraction.

Usage:
    audiopeaks track.mp3                     # merged/split peaks JSON to stdout
    audiopeaks track.mp3 -o peaks.json       # write to file
    audiopeaks track.flac --width 1600 --precision 10 --channels 1

Exit codes: 0 ok, 1 source missing, 2 invalid options, 3 decode failure.
"""

import argparse
import json
import logging
import sys

from audio.errors import DecodeError, InvalidConfig
from audio.extract import DEFAULT_OPTIONS, AudioPeaks, peaks_to_json


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Extract waveform peaks from audio")
    parser.add_argument("source", help="Path to an audio or video file")
    parser.add_argument("-o", "--output", default=None, help="Write peaks JSON here")
    parser.add_argument(
        "--width",
        type=int,
        default=DEFAULT_OPTIONS["width"],
        help="Number of peak buckets",
    )
    parser.add_argument(
        "--precision",
        type=int,
        default=DEFAULT_OPTIONS["precision"],
        help="Read every Nth sample inside a bucket",
    )
    parser.add_argument(
        "--channels",
        type=int,
        default=DEFAULT_OPTIONS["num_channels"],
        help="Channels to decode (2+ gives one peak array per channel)",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=DEFAULT_OPTIONS["sample_rate"],
        help="Decode sample rate in Hz",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        extractor = AudioPeaks(
            num_channels=args.channels,
            sample_rate=args.sample_rate,
            width=args.width,
            precision=args.precision,
        )
        peaks = extractor.get_peaks(args.source, args.output)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except InvalidConfig as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except DecodeError as e:
        print(f"Error decoding audio: {e}", file=sys.stderr)
        return 3

    if not args.output:
        json.dump(peaks_to_json(peaks), sys.stdout, separators=(",", ":"))
        sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
