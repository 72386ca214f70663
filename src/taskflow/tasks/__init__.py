"""Local task store."""
