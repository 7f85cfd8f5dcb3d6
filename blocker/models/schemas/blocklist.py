"""
Request/response schemas for the block and health endpoints.
"""
import re
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator

from .base import ResponseBase

# A skylink is 46 characters of base64url (V1 and V2 alike).
SKYLINK_RE = re.compile(r"(?:^|[^a-zA-Z0-9_-])([a-zA-Z0-9_-]{46})(?:$|[^a-zA-Z0-9_-])")


def extract_skylink(raw: str) -> str:
    """
    Pull the skylink out of whatever the reporter pasted.

    Examples:
        sia://AABB...            -> AABB...
        https://siasky.net/AABB.../index.html -> AABB...
    """
    value = raw.strip()
    if value.startswith("sia://"):
        value = value[len("sia://"):]
    match = SKYLINK_RE.search(value)
    if not match:
        raise ValueError("invalid skylink provided")
    return match.group(1)


class Reporter(BaseModel):
    name: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = Field(default=None, max_length=256)
    other_contact: Optional[str] = Field(default=None, max_length=1024)


class BlockRequest(BaseModel):
    """Report a skylink for blocking."""
    skylink: str = Field(description="Skylink, sia:// link or portal URL containing one")
    reporter: Reporter = Field(default_factory=Reporter)
    tags: List[str] = Field(default_factory=list)

    @field_validator("skylink")
    @classmethod
    def _normalize_skylink(cls, value: str) -> str:
        return extract_skylink(value)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: List[str]) -> List[str]:
        return [t.strip() for t in value if t and t.strip()]


class BlockResponse(ResponseBase):
    skylink: str
    created: bool


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    skyd_up: bool
    sweeper: Optional[Dict[str, Any]] = None
