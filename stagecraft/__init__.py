"""stagecraft - Multi-stage, cache-friendly build pipelines.

This package compiles an application inside isolated toolchain stages,
caches its dependency layer by recipe hash, and packages the resulting
binary into a minimal runtime image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
