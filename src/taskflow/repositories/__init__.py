"""Repository registry."""
