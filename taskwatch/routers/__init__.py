"""Routers package for the routines API."""

from .routines import router as routines_router

__all__ = ["routines_router"]
