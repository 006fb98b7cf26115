"""
Analysis job orchestration.

This package provides functionality for:
- Differential expression eligibility, validation and submission
- Cluster cell grouping and raw counts matrix lookup
"""

from __future__ import annotations

__all__ = [
    "cluster_viz",
    "differential_expression",
]
