"""
AI Vector Util.

Centralized embedding generation and vector search with per-caller usage
tracking and daily performance metrics.
"""

__version__ = "1.0.0"
