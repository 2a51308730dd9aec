"""mlsync (music library sync)

Core package for keeping a music catalog in step with watched folders and
flagging duplicate recordings. See `DESIGN.md`.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
