"""
Remote blescope client - HTTP/SSE implementation.

Talks to a `blescope serve` instance running on a machine with a radio
(e.g. a Raspberry Pi) through its REST API and Server-Sent Events.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from urllib.parse import quote, urljoin

import aiohttp
from aiohttp_sse_client import client as sse_client

from .errors import RemoteError

logger = logging.getLogger(__name__)


class BlescopeClientRemote:
    """
    Remote client for the blescope HTTP service.

    Every method returns the service's JSON body as a dict. Failures raise
    RemoteError carrying the HTTP status where there was one.
    """

    def __init__(
        self,
        remote_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
    ):
        self.remote_url = remote_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "BlescopeClientRemote":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _headers(self) -> dict:
        """Get request headers with API key"""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _ensure_session(self):
        """Ensure HTTP session exists"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def _reset_session(self):
        """Close and recreate the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        await self._ensure_session()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _device_path(self, address: str, suffix: str = "") -> str:
        return f"/api/devices/{quote(address, safe='')}{suffix}"

    def _char_path(self, address: str, char: str | int, action: str) -> str:
        return self._device_path(
            address, f"/characteristics/{quote(str(char), safe='')}/{action}"
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
        retries: int = 2,
        retry_delay: float = 1.5,
        request_timeout: float | None = None,
    ) -> dict:
        """Make HTTP request to remote service, with retry on connection errors"""
        await self._ensure_session()

        url = urljoin(self.remote_url, endpoint)
        timeout = (
            aiohttp.ClientTimeout(total=request_timeout) if request_timeout else None
        )

        for attempt in range(1 + retries):
            try:
                async with self._session.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=data,
                    params=params,
                    timeout=timeout,
                ) as response:
                    try:
                        response_data = await response.json()
                    except (aiohttp.ContentTypeError, json.JSONDecodeError):
                        response_data = {"detail": await response.text()}

                    if response.status >= 400:
                        error_msg = response_data.get('detail', 'Unknown error')
                        raise RemoteError(
                            f"API error ({response.status}): {error_msg}",
                            status=response.status,
                        )

                    return response_data

            except aiohttp.ClientError as e:
                if attempt < retries:
                    logger.warning(
                        "HTTP request failed (%s), retry %d/%d: %s",
                        e, attempt + 1, retries, endpoint
                    )
                    await self._reset_session()
                    await asyncio.sleep(retry_delay)
                    continue
                logger.error("HTTP request failed after %d attempts: %s", retries + 1, e)
                raise RemoteError(f"Connection error: {e}") from e

        raise RemoteError("blescope service unreachable after retries")

    # --- Commands ---

    async def health(self) -> dict:
        return await self._request('GET', '/health')

    async def adapter(self) -> dict:
        return await self._request('GET', '/api/adapter')

    async def scan(
        self,
        timeout: float = 10.0,
        names: list[str] | None = None,
        addresses: list[str] | None = None,
        service_uuids: list[str] | None = None,
    ) -> dict:
        """Run a scan on the remote side and return its results"""
        return await self._request(
            'POST',
            '/api/scan/start',
            {
                'timeout': timeout,
                'names': names or [],
                'addresses': addresses or [],
                'service_uuids': service_uuids or [],
                'wait': True,
            },
            retries=0,
            request_timeout=timeout + self.timeout,
        )

    async def stop_scan(self) -> dict:
        return await self._request('POST', '/api/scan/stop')

    async def status(self, address: str) -> dict:
        return await self._request('GET', self._device_path(address, '/status'))

    async def connect(
        self, address: str, auto_connect: bool = False, timeout: float | None = None
    ) -> dict:
        body = {'auto_connect': auto_connect}
        if timeout is not None:
            body['timeout'] = timeout
        return await self._request(
            'POST',
            self._device_path(address, '/connect'),
            body,
            retries=0,  # a second connect would only hit AlreadyConnecting
            request_timeout=(timeout or self.timeout) + 5.0,
        )

    async def disconnect(self, address: str) -> dict:
        return await self._request('POST', self._device_path(address, '/disconnect'))

    async def services(self, address: str, actionable_only: bool = False) -> dict:
        return await self._request(
            'GET',
            self._device_path(address, '/services'),
            params={'actionable_only': 'true' if actionable_only else 'false'},
        )

    async def read(self, address: str, char: str | int) -> dict:
        return await self._request('GET', self._char_path(address, char, 'read'))

    async def write(
        self,
        address: str,
        char: str | int,
        data: bytes,
        with_response: bool = True,
    ) -> dict:
        return await self._request(
            'POST',
            self._char_path(address, char, 'write'),
            {'data_hex': data.hex(), 'with_response': with_response},
            retries=0,
        )

    async def stream_samples(self, address: str, char: str | int) -> AsyncIterator[dict]:
        """
        Yield decoded samples from the notification SSE stream.

        Ends when the device disconnects or the server closes the stream.
        """
        url = urljoin(self.remote_url, self._char_path(address, char, 'notifications'))
        headers = {}
        if self.api_key:
            headers['X-API-Key'] = self.api_key

        logger.info("Connecting to SSE stream: %s", url)
        timeout = aiohttp.ClientTimeout(total=None, sock_read=90)
        try:
            async with sse_client.EventSource(
                url, headers=headers, timeout=timeout
            ) as event_source:
                async for event in event_source:
                    if event.type == 'sample':
                        yield json.loads(event.data)
                    elif event.type == 'status':
                        status = json.loads(event.data)
                        logger.info("Remote status: %s", status.get('state'))
                        if status.get('state') in ('disconnecting', 'disconnected'):
                            return
                    elif event.type == 'ping':
                        logger.debug("SSE ping received")
        except (ConnectionError, aiohttp.ClientError) as e:
            raise RemoteError(f"SSE stream failed: {e}") from e
