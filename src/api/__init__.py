"""HTTP API for the approval engine.

Example:
    from src.api import create_app
    app = create_app()
"""

from src.api.config import APIConfig, DEFAULT_API_CONFIG
from src.api.app import build_engine, create_app

__all__ = [
    "APIConfig",
    "DEFAULT_API_CONFIG",
    "build_engine",
    "create_app",
]
