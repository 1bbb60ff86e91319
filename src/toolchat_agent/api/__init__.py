"""
API module for the FastAPI application.
"""

from .app import create_app
from .errors import ApiError
from .turns import Turn, TurnReply, TurnRunner

__all__ = ["create_app", "ApiError", "Turn", "TurnReply", "TurnRunner"]
