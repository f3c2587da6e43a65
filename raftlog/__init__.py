"""Append-only, file-based log storage for Raft groups: batches, files, pipes and recovery."""

__version__ = "0.1.0"