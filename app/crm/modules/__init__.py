"""
Feature modules live under this package.

Each module owns its routes, models and service layer, and reuses the
platform primitives (auth, RBAC, audit, DB session, errors).
"""
