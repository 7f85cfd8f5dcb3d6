"""
Services package: persistence, skyd client, nginx cache purge list, dispatch.
"""
from .skylink_store import PendingSkylink, SkylinkStore
from .skyd import SkydAPI, SkydError, BlocklistRejectedError, SkydUnreachableError
from .cache_purge import NginxCachePurger, LockAcquisitionError
from .dispatcher import BatchDispatcher, DispatchOutcome

__all__ = [
    "PendingSkylink",
    "SkylinkStore",
    "SkydAPI",
    "SkydError",
    "BlocklistRejectedError",
    "SkydUnreachableError",
    "NginxCachePurger",
    "LockAcquisitionError",
    "BatchDispatcher",
    "DispatchOutcome",
]
