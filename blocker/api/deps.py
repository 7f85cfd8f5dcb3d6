"""
Dependencies shared by the endpoints.
"""
from fastapi import Request
from blocker.database import SessionLocal
from blocker.services.skylink_store import SkylinkStore

def get_store(request: Request) -> SkylinkStore:
    """
    Skylink store shared with the sweeper.

    Falls back to a store over the default session factory when the lifespan
    didn't run (tests, scripts).
    """
    store = getattr(request.app.state, "skylink_store", None)
    if store is None:
        store = SkylinkStore(SessionLocal)
    return store
