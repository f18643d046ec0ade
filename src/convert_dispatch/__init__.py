"""
Conversion Job Dispatch Service package.

This module provides a FastAPI application that matches uploaded files to a
conversion engine and tracks the asynchronous jobs that perform them.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
