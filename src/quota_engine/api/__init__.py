"""HTTP surface of the quota engine."""

from quota_engine.api.app import create_app

__all__ = ["create_app"]
