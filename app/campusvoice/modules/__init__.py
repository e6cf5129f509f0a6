"""
Feature modules live under this package.

Each module owns its models, service functions and blueprint (admin.py), and
reuses the platform primitives (auth, RBAC, audit, storage, DB session).
"""
