"""RTC token service client."""

from typing import Optional

import httpx

from config import settings
from core.errors import RtcConnectionError
from utils import get_logger

logger = get_logger(__name__)


class TokenService:
    """Requests publisher tokens for a voice channel from the token backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        expire_seconds: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url or settings.token_service_url
        self.timeout = timeout if timeout is not None else settings.token_request_timeout_seconds
        self.expire_seconds = expire_seconds or settings.token_expire_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def fetch_token(self, channel_name: str, uid: int = 0) -> str:
        """
        Fetch a token for joining ``channel_name`` as a publisher.

        Raises:
            RtcConnectionError: service not configured, timed out, or answered
                without a token
        """
        if not self.is_configured:
            raise RtcConnectionError("Token service is not configured", transient=False)

        payload = {
            "channelName": channel_name,
            "uid": uid,
            "role": "publisher",
            "expireTime": self.expire_seconds,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.base_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.error(f"Token request timed out for {channel_name}")
            raise RtcConnectionError("Token request timed out. Please check your internet connection.")
        except httpx.HTTPStatusError as e:
            logger.error(f"Token service returned {e.response.status_code} for {channel_name}")
            raise RtcConnectionError(
                f"Token generation failed: {e.response.status_code}",
                transient=e.response.status_code >= 500
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Token request failed for {channel_name}: {e}")
            raise RtcConnectionError(f"Failed to generate token: {e}")

        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise RtcConnectionError("Token service did not return a token", transient=False)

        logger.debug(f"Token issued for {channel_name}")
        return token
