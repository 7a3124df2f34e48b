# src/__init__.py — v1
"""oci-image-builder: resumable build, upload and import pipeline for machine images."""

from imagebuilder.version import __version__

__all__ = ["__version__"]
