from .memory import router as memory_router
from .maintenance import router as maintenance_router

__all__ = ["memory_router", "maintenance_router"]
