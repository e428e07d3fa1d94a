"""Conversation transcript indexing and search."""
