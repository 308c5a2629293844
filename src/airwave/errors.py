# src/airwave/errors.py


class StreamError(Exception):
    """Base class for expected, recoverable stream conditions."""


class StreamNotReady(StreamError):
    """The manifest (or its directory) does not exist yet."""


class SegmentNotFound(StreamError):
    """The requested segment was evicted or has not been written yet."""


class FetchError(StreamError):
    """A track could not be fetched into the local cache."""
