from .service import CoordinatorService

__all__ = ["CoordinatorService"]
