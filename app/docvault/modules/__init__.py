"""
Feature modules live under this package.

Each module owns its models, services and blueprint while reusing platform
primitives (auth, RBAC, audit, storage, DB session).
"""
