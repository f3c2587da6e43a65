"""Exceptions raised by the log engine."""


class RaftLogError(Exception):
    """Base class for every error raised by the log engine."""


class CorruptionError(RaftLogError):
    """Stored data is malformed or fails verification."""


class FullError(RaftLogError):
    """A batch cannot take more content without exceeding its size limit."""


class InvalidArgumentError(RaftLogError):
    """A caller supplied an argument that cannot be used."""