"""
HTTP Target Adapter - Drives a JSON/HTTP API toward the desired state.

Each spec item maps to one HTTP resource:

    PUT    {base_url}/{namespace}/{name}/{key}   create / update (upsert)
    DELETE {base_url}/{namespace}/{name}/{key}   delete (404 counts as done)
    GET    {base_url}/{namespace}/{name}         observe

Path segments are percent-encoded, so any key maps to exactly one URL.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import aiohttp

from adapters.base import (
    AdapterContext,
    AdapterError,
    PermanentAdapterError,
    TargetAdapter,
)

logger = logging.getLogger(__name__)

# 4xx responses that are worth retrying
TRANSIENT_CLIENT_ERRORS = {408, 409, 425, 429}


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class HTTPTargetAdapter(TargetAdapter):
    """Adapter for environments that expose items as JSON HTTP resources."""

    def __init__(self):
        self.base_url: Optional[str] = None
        self.token: Optional[str] = None
        self.timeout: int = 30
        self.drift_detection: bool = False

    @property
    def name(self) -> str:
        return "http"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP adapter configuration from environment variables."""
        drift_detection = os.getenv("HTTP_ADAPTER_DRIFT_DETECTION", "false")
        config: Dict[str, Any] = {
            "timeout": int(os.getenv("HTTP_ADAPTER_TIMEOUT", "30")),
            "drift_detection": drift_detection.lower() == "true",
        }
        if os.getenv("HTTP_ADAPTER_BASE_URL"):
            config["base_url"] = os.getenv("HTTP_ADAPTER_BASE_URL")
        if os.getenv("HTTP_ADAPTER_TOKEN"):
            config["token"] = os.getenv("HTTP_ADAPTER_TOKEN")
        return config

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the adapter with configuration."""
        base_url = config.get("base_url")
        if not base_url:
            raise ValueError("HTTP adapter requires 'base_url'")

        self.base_url = base_url.rstrip("/")
        self.token = config.get("token")
        self.timeout = int(config.get("timeout", self.timeout))
        self.drift_detection = bool(config.get("drift_detection", False))

        logger.debug(
            f"HTTP adapter initialized: base_url={self.base_url}, "
            f"timeout={self.timeout}s, drift_detection={self.drift_detection}"
        )

    async def create(self, ctx: AdapterContext, key: str, desired: Any) -> None:
        await self._request("PUT", self._item_url(ctx, key), payload=desired)
        logger.info(f"Created {key} for {ctx.kind}/{ctx.namespace}/{ctx.name}")

    async def update(
        self, ctx: AdapterContext, key: str, previous: Any, desired: Any
    ) -> None:
        await self._request("PUT", self._item_url(ctx, key), payload=desired)
        logger.info(f"Updated {key} for {ctx.kind}/{ctx.namespace}/{ctx.name}")

    async def delete(self, ctx: AdapterContext, key: str, previous: Any) -> None:
        await self._request("DELETE", self._item_url(ctx, key), allow=(404,))
        logger.info(f"Deleted {key} for {ctx.kind}/{ctx.namespace}/{ctx.name}")

    async def observe(self, ctx: AdapterContext) -> Dict[str, Any]:
        body = await self._request("GET", self._resource_url(ctx), allow=(404,))
        if not isinstance(body, dict):
            return {}
        return body

    async def detect_drift(self, ctx: AdapterContext, desired: Dict[str, Any]) -> bool:
        """Compare every item in the environment with its desired value."""
        if not self.drift_detection:
            return False

        for key, value in desired.items():
            actual = await self._request(
                "GET", self._item_url(ctx, key), allow=(404,)
            )
            if actual != value:
                logger.info(
                    f"Drift detected on {key} for "
                    f"{ctx.kind}/{ctx.namespace}/{ctx.name}"
                )
                return True
        return False

    # Private helper methods

    def _resource_url(self, ctx: AdapterContext) -> str:
        return f"{self.base_url}/{_segment(ctx.namespace)}/{_segment(ctx.name)}"

    def _item_url(self, ctx: AdapterContext, key: str) -> str:
        return f"{self._resource_url(ctx)}/{_segment(key)}"

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        allow: Iterable[int] = (),
    ) -> Any:
        """
        Issue one request and classify failures.

        Returns:
            Decoded JSON body, or None for empty or allowed-error responses.

        Raises:
            AdapterError: On network errors, timeouts, 5xx and retryable 4xx.
            PermanentAdapterError: On any other 4xx.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        kwargs: Dict[str, Any] = {"headers": self._get_headers()}
        if payload is not None:
            kwargs["json"] = payload

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    if response.status in allow:
                        return None
                    if response.status >= 400:
                        body = await response.text()
                        self._raise_for_status(method, url, response.status, body)
                    if response.status == 204:
                        return None
                    if response.content_type != "application/json":
                        return None
                    return await response.json()
        except AdapterError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AdapterError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(method: str, url: str, status: int, body: str) -> None:
        message = f"{method} {url} returned HTTP {status}: {body[:200]}"
        if status >= 500 or status in TRANSIENT_CLIENT_ERRORS:
            raise AdapterError(message)
        raise PermanentAdapterError(message)
