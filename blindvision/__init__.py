"""
BlindVision - hands-free scene assistant for blind and low-vision users.
"""

import logging

# Request-level chatter from the HTTP clients drowns out turn logging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)

__version__ = "0.1.0"

__all__ = ["__version__"]
