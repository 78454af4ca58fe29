from .service import PositionSyncService

__all__ = ["PositionSyncService"]
