"""
REST client for the Picologs website API.

The WebSocket carries logs and presence; the authoritative friend list,
group list, group members and the user's own profile come from here.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from picologs_runtime.types import Friend, Group, GroupMember, UserProfile

logger = logging.getLogger(__name__)

MAX_RATE_LIMIT_RETRIES = 4


class ApiClient:
    """Thin wrapper around httpx for website API requests."""

    def __init__(self, api_url: str, token: str | None = None, timeout: float = 30.0) -> None:
        self.base_url = api_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        """Call a website endpoint and return its decoded JSON.

        A 429 is retried up to ``MAX_RATE_LIMIT_RETRIES`` times. The wait
        doubles from 5s (capped at 60s), never undercuts ``Retry-After``,
        and is jittered by +/-20%.
        """
        for attempt in range(MAX_RATE_LIMIT_RETRIES + 1):
            response = await self._client.request(method=method, url=path, json=body)
            if response.status_code != 429 or attempt == MAX_RATE_LIMIT_RETRIES:
                break
            wait = max(float(response.headers.get("retry-after", "0")), min(5 * 2**attempt, 60))
            wait *= random.uniform(0.8, 1.2)
            logger.info("Picologs API rate limited %s; retry %d in %.1fs", path, attempt + 1, wait)
            await asyncio.sleep(wait)

        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"{method} {path} failed ({response.status_code}): {self._error_text(response)}",
                request=response.request,
                response=response,
            )
        if response.status_code == 204:
            return {}
        return response.json()

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        # Only the short error field, never the whole body
        try:
            payload = response.json()
            return str(payload.get("error") or payload.get("message") or "Request failed")
        except (ValueError, AttributeError):
            return "Request failed"

    async def fetch_user_profile(self) -> UserProfile:
        data = await self.request("GET", "/api/user/getProfile")
        return UserProfile.model_validate(data.get("user", data))

    async def fetch_friends(self) -> list[Friend]:
        data = await self.request("POST", "/api/friends/getFriends", {})
        friends = data if isinstance(data, list) else data.get("friends", [])
        return [Friend.model_validate(f) for f in friends]

    async def fetch_groups(self) -> list[Group]:
        data = await self.request("POST", "/api/groups/getGroups", {})
        groups = data if isinstance(data, list) else data.get("groups", [])
        return [Group.model_validate(g) for g in groups]

    async def fetch_group_members(self, group_id: str) -> list[GroupMember]:
        data = await self.request("POST", "/api/groups/getGroupMembers", {"groupId": group_id})
        members = data if isinstance(data, list) else data.get("members", [])
        return [GroupMember.model_validate(m) for m in members]

    async def close(self) -> None:
        await self._client.aclose()
