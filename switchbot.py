"""
SwitchBot Cloud Gateway
=======================
Authenticated status reads and command writes against the SwitchBot
v1.1 cloud API.

Auth:   HMAC-SHA256 signed headers (token + t + nonce), per request
Quota:  local daily counter in <data_dir>/quota.json (resets at UTC midnight)
Errors: every failure is raised as an error_handler.GatewayError subclass

The automation engine only depends on DeviceGateway; tests substitute a
fake implementation.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

from error_handler import (
    AuthError,
    DeviceNotFoundError,
    ErrorHandler,
    GatewayError,
    GatewayTimeoutError,
    ServerError,
    classify_http_status,
    with_retries,
)

logger = logging.getLogger("switchbot")

DEFAULT_BASE_URL = "https://api.switch-bot.com/v1.1"
DEFAULT_TIMEOUT = 10
DEFAULT_DAILY_QUOTA = 10000

# Body-level statusCode values returned with HTTP 200
STATUS_OK = 100
STATUS_NOT_FOUND = {152}
STATUS_UNSUPPORTED = {151, 160}


class DeviceGateway(ABC):
    """
    Capability the automation engine uses to reach devices.

    Implementations raise GatewayError subclasses on failure.
    """

    @abstractmethod
    async def get_status(self, device_id: str) -> Dict[str, Any]:
        """Return the device's current status snapshot."""

    @abstractmethod
    async def send_command(self, device_id: str, command: str,
                           parameter: str = "default",
                           command_type: str = "command") -> bool:
        """Send a command; True on success."""

    async def get_devices(self) -> Dict[str, Any]:
        return {"deviceList": [], "infraredRemoteList": []}

    async def execute_scene(self, scene_id: str) -> Dict[str, Any]:
        raise GatewayError(f"Scenes not supported by {type(self).__name__}")

    def quota_remaining(self) -> Optional[int]:
        return None

    async def close(self):
        pass


# =============================================================================
# QUOTA
# =============================================================================

class QuotaTracker:
    """Local estimate of the remaining daily API calls."""

    def __init__(self, path: Optional[str], daily_quota: int = DEFAULT_DAILY_QUOTA):
        self.path = path
        self.daily_quota = daily_quota
        self._remaining = daily_quota
        self._reset_date = ""
        self._load()

    @staticmethod
    def _today() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._remaining = int(data.get("remaining", self.daily_quota))
            self._reset_date = data.get("lastResetDate", "")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load quota: {e}")

    def _save(self):
        if not self.path:
            return
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump({"remaining": self._remaining,
                           "lastResetDate": self._reset_date}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save quota: {e}")

    def _roll_day(self):
        today = self._today()
        if self._reset_date != today:
            self._remaining = self.daily_quota
            self._reset_date = today

    def consume(self) -> int:
        self._roll_day()
        if self._remaining > 0:
            self._remaining -= 1
        self._save()
        return self._remaining

    def remaining(self) -> int:
        if self._reset_date and self._reset_date != self._today():
            return self.daily_quota
        return self._remaining


# =============================================================================
# GATEWAY
# =============================================================================

def sign_request(token: str, secret: str, t: Optional[str] = None,
                 nonce: Optional[str] = None) -> Dict[str, str]:
    """Build SwitchBot v1.1 auth headers."""
    t = t or str(int(time.time() * 1000))
    nonce = nonce or str(uuid.uuid4())
    data = f"{token}{t}{nonce}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    sign = base64.b64encode(digest).decode("utf-8").upper()
    return {
        "Authorization": token,
        "sign": sign,
        "nonce": nonce,
        "t": t,
        "Content-Type": "application/json",
    }


class SwitchBotGateway(DeviceGateway):

    def __init__(self, token: Optional[str], secret: Optional[str],
                 base_url: str = DEFAULT_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT,
                 quota: Optional[QuotaTracker] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.token = token
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.quota = quota or QuotaTracker(None)
        self.error_handler = error_handler or ErrorHandler()
        self._session: Optional[aiohttp.ClientSession] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def _headers(self) -> Dict[str, str]:
        if not self.token or not self.secret:
            raise AuthError("Missing SwitchBot API credentials")
        return sign_request(self.token, self.secret)

    async def _request(self, method: str, path: str,
                       payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = self._headers()
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.request(method, url, headers=headers, json=payload) as resp:
                error = classify_http_status(resp.status, f"{method} {path}: HTTP {resp.status} {resp.reason}")
                if error:
                    raise error
                # SwitchBot counts every call that reaches it, body errors included
                self.quota.consume()
                try:
                    data = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError) as e:
                    raise ServerError(f"{method} {path}: response is not JSON") from e
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f"{method} {path} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise ServerError(f"{method} {path} failed: {e}") from e

        if not isinstance(data, dict):
            raise ServerError(f"{method} {path}: unexpected response {data!r}")

        code = data.get("statusCode", STATUS_OK)
        if code != STATUS_OK:
            message = f"{method} {path}: statusCode {code} {data.get('message', '')}".strip()
            if code in STATUS_NOT_FOUND:
                raise DeviceNotFoundError(message)
            if code in STATUS_UNSUPPORTED:
                raise GatewayError(message)
            raise ServerError(message)

        return data

    # =========================================================================
    # DEVICE GATEWAY
    # =========================================================================

    async def get_devices(self) -> Dict[str, Any]:
        data = await self._request("GET", "/devices")
        return data.get("body") or {}

    @with_retries(max_retries=2)
    async def get_status(self, device_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/devices/{device_id}/status")
        return data.get("body") or {}

    async def send_command(self, device_id: str, command: str,
                           parameter: str = "default",
                           command_type: str = "command") -> bool:
        await self._request("POST", f"/devices/{device_id}/commands", {
            "command": command,
            "parameter": parameter or "default",
            "commandType": command_type or "command",
        })
        logger.info(f"Command sent: {device_id} -> {command} ({parameter})")
        return True

    async def execute_scene(self, scene_id: str) -> Dict[str, Any]:
        data = await self._request("POST", f"/scenes/{scene_id}/execute")
        return data

    def quota_remaining(self) -> Optional[int]:
        return self.quota.remaining()


def build_gateway(config: dict, data_dir: str) -> SwitchBotGateway:
    """Create the gateway from the ``switchbot`` config section."""
    section = config.get("switchbot", {})
    quota = QuotaTracker(os.path.join(data_dir, "quota.json"),
                         daily_quota=int(section.get("daily_quota", DEFAULT_DAILY_QUOTA)))
    return SwitchBotGateway(
        token=section.get("token"),
        secret=section.get("secret"),
        base_url=section.get("base_url", DEFAULT_BASE_URL),
        timeout=float(section.get("timeout", DEFAULT_TIMEOUT)),
        quota=quota,
    )
