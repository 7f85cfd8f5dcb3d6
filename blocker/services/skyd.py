"""Skyd blocklist client.

The sweeper only needs one thing from skyd: "block these skylinks". Skyd
answers for the request as a whole, there is no per skylink status, which is
why the dispatcher has to bisect failing batches on its own.
"""
from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Dict, Optional, Protocol

import aiohttp

from blocker.config import SKYD_SETTINGS
from blocker.utils import get_logger

logger = get_logger(__name__)

# Skyd's answer when every skylink in the request was already blocked.
NO_ENTRIES_UPDATED = "no entries updated"


class SkydError(Exception):
    """Base error for skyd calls."""


class BlocklistRejectedError(SkydError):
    """Skyd answered and refused to update the blocklist with this batch."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SkydUnreachableError(SkydError):
    """Skyd could not be reached (connection error, timeout)."""


class BlockingAuthority(Protocol):
    async def block_skylinks(self, skylinks: list[str]) -> None: ...


class SkydAPI:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        api_password: Optional[str] = None,
        *,
        timeout_seconds: Optional[float] = None,
        base_url: Optional[str] = None,
    ):
        host = str(host if host is not None else SKYD_SETTINGS["host"])
        port = int(port if port is not None else SKYD_SETTINGS["port"])  # type: ignore[arg-type]
        self.base_url = (base_url or f"http://{host}:{port}").rstrip("/")
        self._timeout = aiohttp.ClientTimeout(
            total=float(timeout_seconds if timeout_seconds is not None else SKYD_SETTINGS["timeout_seconds"])  # type: ignore[arg-type]
        )
        password = str(api_password if api_password is not None else SKYD_SETTINGS["api_password"])
        self._headers = {
            "User-Agent": str(SKYD_SETTINGS["user_agent"]),
            "Authorization": _basic_auth("", password),
        }
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def block_skylinks(self, skylinks: list[str]) -> None:
        """Add the given skylinks to skyd's blocklist.

        Raises:
            BlocklistRejectedError: skyd refused the batch
            SkydUnreachableError: skyd could not be reached
        """
        payload: Dict[str, Any] = {"add": list(skylinks), "remove": [], "isHash": False}
        url = f"{self.base_url}/skynet/blocklist"
        try:
            async with self._get_session().post(url, json=payload) as response:
                if response.status < 300:
                    return
                body = await response.text()
        except asyncio.TimeoutError as e:
            raise SkydUnreachableError(f"skyd blocklist request timed out: {url}") from e
        except aiohttp.ClientError as e:
            raise SkydUnreachableError(f"skyd blocklist request failed: {e}") from e

        message = _error_message(body)
        if NO_ENTRIES_UPDATED in message:
            logger.debug("Skylinks already blocked in skyd", count=len(skylinks))
            return
        raise BlocklistRejectedError(
            f"skyd refused to update the blocklist (status {response.status}): {message}",
            status=response.status,
        )

    async def is_skyd_up(self) -> bool:
        """True when skyd reports consensus, gateway and renter as ready."""
        url = f"{self.base_url}/daemon/ready"
        try:
            async with self._get_session().get(url) as response:
                if response.status != 200:
                    return False
                data = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            logger.warning("Skyd readiness check failed", url=url, error=str(e))
            return False
        if not isinstance(data, dict):
            return False
        return bool(data.get("consensus") and data.get("gateway") and data.get("renter"))


def _basic_auth(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _error_message(body: str) -> str:
    """Skyd errors come as {"message": "..."}; fall back to the raw body."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return body.strip()


__all__ = [
    "BlockingAuthority",
    "SkydAPI",
    "SkydError",
    "BlocklistRejectedError",
    "SkydUnreachableError",
    "NO_ENTRIES_UPDATED",
]
