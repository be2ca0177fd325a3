from .repositories import JsonStayRepository, StayConflictError, StayRecord, StayStatus, StayStoreError
from .stays import StayNotFoundError, StayService, StayStateError

__all__ = [
    "JsonStayRepository",
    "StayConflictError",
    "StayNotFoundError",
    "StayRecord",
    "StayService",
    "StayStateError",
    "StayStatus",
    "StayStoreError",
]
