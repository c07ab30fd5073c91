"""Taskwatch routines: recurring session rules and their occurrence engine."""

__version__ = "1.0.0"
