"""Execution paths behind one trading surface."""

from .adapter import ModeAdapter
from .backend import TradingBackend
from .confidential import ConfidentialBackend
from .transparent import TransparentBackend

__all__ = ["ConfidentialBackend", "ModeAdapter", "TradingBackend", "TransparentBackend"]
