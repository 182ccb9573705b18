# continuity/__init__.py
"""Narrative continuity tracking, decoding, merging and scoring."""

from . import merge as merge
from . import scoring as scoring
from .extraction import DecodeResult, StructuredCaller, decode_structured
from .tracker import ContinuityTracker, truncate_content

__all__ = [
    "ContinuityTracker",
    "DecodeResult",
    "StructuredCaller",
    "decode_structured",
    "truncate_content",
    "merge",
    "scoring",
]
