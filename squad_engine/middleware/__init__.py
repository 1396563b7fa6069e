"""Middleware package for the squad engine API."""

from squad_engine.middleware.error_handler import setup_error_handlers

__all__ = [
    "setup_error_handlers",
]
