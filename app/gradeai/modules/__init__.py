"""
Feature modules live under this package.

Each module owns its models, service helpers and JSON routes, while reusing
platform primitives (auth, audit, storage, DB session, rate limiting).
"""
