"""REST API layer for kube-pat.

Exposes:
    create_app -- FastAPI application factory.
"""

from kubepat.api.app import create_app

__all__ = ["create_app"]
