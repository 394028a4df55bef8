"""
Documents module: logical documents, their append-only version history and
their key/value metadata.

- Version numbers are 1..N per document with no gaps or duplicates
- Restoring an old version appends a copy; history is never rewritten
- Every mutation and every download is recorded to the audit trail
"""
