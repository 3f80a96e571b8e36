"""HTTP routers."""

from .devices import router as devices_router, get_manager

__all__ = ["devices_router", "get_manager"]
