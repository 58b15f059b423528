"""
Analysis export for AI Usage Guard.

Provides the data handed to an external rendering surface.
"""

from .analysis import build_analysis_payload, summarize, write_analysis_json

__all__ = ["build_analysis_payload", "summarize", "write_analysis_json"]
