"""Folders: named groupings of documents (many-to-many)."""
