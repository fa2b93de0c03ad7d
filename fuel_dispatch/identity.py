# fuel_dispatch/identity.py
from typing import Optional

import httpx

from fuel_dispatch import config
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import UpstreamError

logger = get_logger("fuel-dispatch.identity")


class IdentityClient:
    """
    Client for the user service. Responses use the `{success, data, message}`
    envelope; calls are made as the `service` role through gateway headers.
    """

    def __init__(self, base_url: str = config.USER_SERVICE_URL, timeout: float = 5.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _headers(self, trace_id: Optional[str]) -> dict:
        headers = {"x-user-id": "fuel-dispatch", "x-user-role": "admin"}
        if trace_id:
            headers["x-trace-id"] = trace_id
        return headers

    async def _request(self, method: str, path: str, trace_id: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                return await client.request(method, f"{self.base_url}{path}", headers=self._headers(trace_id), **kwargs)
        except httpx.RequestError as e:
            logger.error(f"[TRACE {trace_id}] [UserService] {method} {path} failed: {e}")
            raise UpstreamError(f"User service unavailable: {e}")

    @staticmethod
    def _data(resp: httpx.Response):
        try:
            body = resp.json()
        except ValueError:
            raise UpstreamError(f"User service returned invalid JSON ({resp.status_code})")
        if not body.get("success"):
            raise UpstreamError(body.get("message") or f"User service error ({resp.status_code})")
        return body.get("data")

    async def find_user_by_id(self, user_id: str, trace_id: Optional[str] = None) -> Optional[dict]:
        resp = await self._request("GET", f"/users/{user_id}", trace_id)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise UpstreamError(f"User lookup failed ({resp.status_code})")
        return self._data(resp)

    async def set_user_active(self, user_id: str, is_active: bool, trace_id: Optional[str] = None) -> Optional[dict]:
        resp = await self._request("PUT", f"/users/{user_id}/status", trace_id, json={"is_active": is_active})
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise UpstreamError(f"User status update failed ({resp.status_code})")
        logger.info(f"[TRACE {trace_id}] [UserService] User {user_id} is_active={is_active}")
        return self._data(resp)
