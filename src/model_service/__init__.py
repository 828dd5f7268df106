"""
Image-to-3D Model Conversion Service package.

This module provides a FastAPI application that accepts image uploads,
converts them to GLB models in the background and exposes polling
endpoints for status, the original image and the produced model.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
