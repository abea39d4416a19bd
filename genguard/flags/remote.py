"""Client for the remote config service."""

from typing import Any

import httpx

from genguard.errors import ConfigFetchError
from genguard.logging.config import get_logger

logger = get_logger(__name__)


class RemoteConfigClient:
    """Reads single flag values over HTTP with a bearer token.

    ``GET {base_url}/{key}`` may answer with a bare JSON value or an object
    carrying ``value`` or ``item``. Every failure (connection, timeout,
    non-2xx status, undecodable body) is reported as ``ConfigFetchError``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def fetch(self, key: str) -> Any:
        """Return the raw value stored for ``key``."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.get(f"{self.base_url}/{key}")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ConfigFetchError("remote", f"status {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise ConfigFetchError("remote", "timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ConfigFetchError("remote", str(e) or type(e).__name__) from e

        if isinstance(data, dict):
            if data.get("value") is not None:
                return data["value"]
            if data.get("item") is not None:
                return data["item"]
        return data
