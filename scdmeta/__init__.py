"""
scdmeta: four-level hierarchical meta-analysis of single-case designs.

Restricted maximum likelihood estimation of study / cluster / case random
effects with AR(1), optionally phase-heteroscedastic residuals, and the
small-sample inference built on it.

Submodules:
    core: Result envelope, exceptions, validators
    hlm: Hierarchical linear model engine
"""

__version__ = "0.1.0"

from scdmeta import hlm

__all__ = [
    "__version__",
    "hlm",
]
