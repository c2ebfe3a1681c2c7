"""
REST client for the marketplace messaging API.
Covers the calls the realtime layer needs: history, contacts, seen markers and inquiries.
Every method returns the decoded JSON body, or ``{"success": False, "message": ...}``
when the request could not be completed.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from CostumeChat.config import config
from CostumeChat.core.client.utils.constants import API_TIMEOUT_SECONDS
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import CostumeReference, format_timestamp, utcnow

logger = get_logger(__name__)


class SessionManager:
    """
    Lazily creates and reuses one aiohttp.ClientSession.

    Each API client owns its own manager so the session is bound to the
    event loop that first used it.
    """

    def __init__(self, timeout: float = API_TIMEOUT_SECONDS):
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._timeout = timeout

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            async with self._lock:
                if self._session is None or self._session.closed:
                    connector = aiohttp.TCPConnector(
                        limit=0,
                        ttl_dns_cache=300,
                    )
                    timeout = aiohttp.ClientTimeout(total=self._timeout, connect=10)
                    self._session = aiohttp.ClientSession(
                        connector=connector,
                        timeout=timeout,
                        trust_env=False
                    )
        return self._session

    async def close(self) -> None:
        """Close the session."""
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None


class CostumeChatAPIClient:
    """Messaging endpoints of the marketplace API."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None):
        """
        Args:
            base_url: API root, e.g. ``http://localhost:8000/api/v2``
            token: Bearer token of the signed-in user
        """
        self.base_url = (base_url or config.API_URL).rstrip("/")
        self.token = token if token is not None else config.API_TOKEN
        self._sessions = SessionManager()

    async def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the API.

        Args:
            endpoint: Path below ``base_url``
            method: HTTP method
            data: JSON body
            params: Query parameters; None values are dropped

        Returns:
            Decoded response body, or a failure dict
        """
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}

        try:
            session = await self._sessions.get_session()
            async with session.request(method, url, json=data, params=query, headers=headers) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    logger.warning("%s %s returned status %s without a JSON object", method, endpoint, response.status)
                    return {"success": False, "message": f"Request failed with status {response.status}"}
                if response.status >= 400:
                    logger.warning("%s %s failed with status %s", method, endpoint, response.status)
                    body.setdefault("success", False)
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("%s %s failed: %s", method, endpoint, e)
            return {"success": False, "message": f"Request failed: {e}"}

    async def get_contacts(self, user_id: str, cursor: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        """Contacts of a lender, newest conversation first."""
        return await self._make_request(
            f"/message/users/lender/contacts/{user_id}",
            params={"cursor": cursor, "limit": limit},
        )

    async def get_conversation_messages(
        self,
        conversation_id: str,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """One page of a conversation's history (``data`` holds message rows)."""
        return await self._make_request(
            f"/message/conversations/{conversation_id}/messages",
            params={"cursor": cursor, "limit": limit},
        )

    async def mark_messages_seen(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        """Mark the counterparty's messages in a conversation as seen by ``user_id``."""
        return await self._make_request(
            f"/message/users/contacts/messages/seen/{conversation_id}",
            method="PATCH",
            params={"userId": user_id},
            data={},
        )

    async def send_inquiry(
        self,
        conversation_id: str,
        costume: CostumeReference,
        lender_id: str,
        lender_username: str,
        borrower_id: str,
        borrower_username: str,
    ) -> Dict[str, Any]:
        """Open (or continue) a thread about a listing on behalf of the borrower."""
        return await self._make_request(
            "/message/inquire",
            method="POST",
            data={
                "conversationId": conversation_id,
                "costumeId": costume.id,
                "costumeName": costume.name,
                "lenderId": lender_id,
                "lenderUsername": lender_username,
                "borrowerId": borrower_id,
                "borrowerUsername": borrower_username,
                "timestamp": format_timestamp(utcnow()),
            },
        )

    async def close(self) -> None:
        """Release the HTTP session."""
        await self._sessions.close()


__all__ = ["CostumeChatAPIClient", "SessionManager"]
