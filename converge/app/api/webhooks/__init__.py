from .registry import router as registry_router

__all__ = ["registry_router"]
