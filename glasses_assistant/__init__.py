"""
Glasses Assistant - Voice assistant server for camera-equipped smart glasses.
"""

import logging

# Quiet the HTTP client used by google-genai
logging.getLogger("httpx").setLevel(logging.WARNING)

__version__ = "0.1.0"

__all__ = ["__version__"]
