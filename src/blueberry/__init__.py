"""Blueberry: a live mirror of a Home Assistant hub plus reactive automations."""

__version__ = "0.1.0"
