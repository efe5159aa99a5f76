"""Runback: multi-provider chat sessions with branching responses,
checkpoint summaries and queued generation jobs."""

__version__ = "0.1.0"
