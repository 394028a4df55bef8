"""
Feature modules live under this package.

Each module owns its models, service functions and JSON blueprint, while
reusing platform primitives (auth, RBAC, audit, storage, DB session).
"""
