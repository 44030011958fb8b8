from .transactions import router as transactions_router
from .health import router as health_router
from .status import router as status_router

__all__ = ["transactions_router", "health_router", "status_router"]
