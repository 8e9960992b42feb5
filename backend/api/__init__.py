from .account import router as account_router
from .memories import router as memories_router

__all__ = ["account_router", "memories_router"]
