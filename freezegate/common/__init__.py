"""
Common utilities and shared components
"""
from .clock import ensure_utc, now_utc

__all__ = ["ensure_utc", "now_utc"]
