"""Quota & rate-limit enforcement engine."""

__version__ = "0.1.0"
