import json
import logging
import typing

import httpx

logger = logging.getLogger(__name__)


class RoflUtility:
    """Talks to the ROFL app daemon to obtain the relayer's signing key."""

    ROFL_SOCKET_PATH = "/run/rofl-appd.sock"

    def __init__(self, url: str = ''):
        self.url = url

    async def _appd_post(self, path: str, payload: typing.Any) -> typing.Any:
        transport = None
        if self.url and not self.url.startswith('http'):
            transport = httpx.AsyncHTTPTransport(uds=self.url)
            logger.debug(f"Using HTTP socket: {self.url}")
        elif not self.url:
            transport = httpx.AsyncHTTPTransport(uds=self.ROFL_SOCKET_PATH)
            logger.debug(f"Using unix domain socket: {self.ROFL_SOCKET_PATH}")

        async with httpx.AsyncClient(transport=transport) as client:
            url = self.url if self.url and self.url.startswith('http') else "http://localhost"
            logger.debug(f"Posting to {url+path}: {json.dumps(payload)}")
            response = await client.post(url + path, json=payload, timeout=None)
            response.raise_for_status()
            return response.json()

    async def fetch_key(self, id: str) -> str:
        """Derive (or fetch) the secp256k1 key registered under `id`."""
        payload = {
            "key_id": id,
            "kind": "secp256k1"
        }

        path = '/rofl/v1/keys/generate'

        response = await self._appd_post(path, payload)
        return response["key"]
