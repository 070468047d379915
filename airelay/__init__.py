"""
AI Relay - multi-provider AI request dispatch

Turns assistant prompts into calls against one of several generative-AI HTTP
APIs, with API key rotation, classified retries, per-provider rate limiting
and a serialized request queue.
"""

__version__ = "0.1.0"
__author__ = "AI Relay Team"

from .core.config import Config
from .core.exceptions import RelayError
from .core.logging_config import setup_logging
from .providers.gateway import AIGateway, generate_response

__all__ = [
    "Config",
    "RelayError",
    "setup_logging",
    "AIGateway",
    "generate_response",
]
