"""
Core modules for AI Vector Util.

This package contains text preprocessing, vector math, usage recording
and metrics aggregation.
"""
