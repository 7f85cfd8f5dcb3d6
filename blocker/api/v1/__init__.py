"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import blocklist

api_router = APIRouter()

api_router.include_router(
    blocklist.router,
    tags=["blocklist"]
)
