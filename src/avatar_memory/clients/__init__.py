"""Embedding model clients."""
