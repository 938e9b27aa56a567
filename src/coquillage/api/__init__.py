"""HTTP transport over the synchronization core."""

from coquillage.api.app import create_app

__all__ = ["create_app"]
