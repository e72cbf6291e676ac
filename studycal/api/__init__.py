"""HTTP surface of the study calendar service."""

from .main import create_app

__all__ = ["create_app"]
