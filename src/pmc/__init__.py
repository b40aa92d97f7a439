"""python-media-converter package.

Preset-driven ffmpeg conversion plus cached scrub previews.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
