"""HTTP API for the escrow core."""

from marketplace_escrow.api.app import create_app

__all__ = ["create_app"]
