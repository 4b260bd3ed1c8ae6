"""
Compute utilities shared across the engine.
"""

from scdmeta.core.compute.timing import Timer

__all__ = ["Timer"]
