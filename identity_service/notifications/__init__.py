"""Outbound email and in-app notification delivery."""
