"""Telegram ⇄ Discord message mirror with edit/delete propagation."""

__version__ = "0.1.0"
