"""HTTP transport over run sessions."""

from runbook_engine.server.app import create_app

__all__ = ["create_app"]
