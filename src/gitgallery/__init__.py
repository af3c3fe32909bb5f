"""GitGallery - photo library sync backed by a GitHub repository."""

__version__ = "0.1.0"
