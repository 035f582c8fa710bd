"""Repo Studio

Core package for browsing a repository of audio files, multi-selecting them
and driving background fingerprinting against a storage backend.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
