"""
apimesh - API Module

FastAPI router and application factory.
"""

from .routes import (
    ExecuteRequest,
    SelectionInput,
    SelectRequest,
    create_app,
    create_router,
)

__all__ = [
    "ExecuteRequest",
    "SelectionInput",
    "SelectRequest",
    "create_app",
    "create_router",
]
