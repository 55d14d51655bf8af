"""HTTP surface for the authentication endpoints."""
