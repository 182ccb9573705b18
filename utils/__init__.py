# utils/__init__.py
"""General utilities for Folio."""

from .logging import setup_logging_folio

__all__ = ["setup_logging_folio"]
