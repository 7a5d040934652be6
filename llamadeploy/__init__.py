"""Deployment and operations tooling for a llama.cpp server."""

import logging

__version__ = "0.3.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
