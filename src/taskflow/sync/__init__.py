"""Bidirectional sync between local tasks and remote issues."""
