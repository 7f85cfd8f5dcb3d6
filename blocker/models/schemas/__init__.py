from .base import ResponseBase
from .blocklist import BlockRequest, BlockResponse, HealthResponse, Reporter, extract_skylink

__all__ = [
    "ResponseBase",
    "BlockRequest",
    "BlockResponse",
    "HealthResponse",
    "Reporter",
    "extract_skylink",
]
