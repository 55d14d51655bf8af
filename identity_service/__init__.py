"""Credential and session lifecycle service for the wellbeing platform."""

__version__ = "0.1.0"
