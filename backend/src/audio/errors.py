"""Error types raised by the peak extraction pipeline."""


class PeaksError(Exception):
    """Base class for peak extraction failures."""


class InvalidConfig(PeaksError, ValueError):
    """A decoder, aggregator or extractor was built with unusable parameters."""


class SequenceViolation(PeaksError):
    """Sample batches arrived in a shape the aggregator cannot resume from."""


class DecodeError(PeaksError):
    """The source media could not be transcoded to raw PCM."""
