"""
PDF Image Service package.

This module provides a FastAPI application that converts batches of PDF
documents to PNG or JPEG page images in the background. Jobs are polled at
`/jobs/{id}` and results downloaded as a ZIP archive.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
