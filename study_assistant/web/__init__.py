"""HTTP interface for the Study Assistant."""

from .server import create_app

__all__ = ["create_app"]
