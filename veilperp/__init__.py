"""Confidential / transparent perpetuals client layer."""

__version__ = "0.1.0"
