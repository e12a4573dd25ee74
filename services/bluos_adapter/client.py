"""
BluOS device control client: one HTTP call per invocation.

Endpoints (port 11000, plain HTTP, no auth):
  POST /Play    {"command": "play" | "skip" | "back" | "pause"}
  POST /Volume  {"volume": N}
  GET  /Status  status payload (stored verbatim by the caller)

Errors are not swallowed here: non-2xx raises aiohttp.ClientResponseError,
connection problems raise aiohttp.ClientError, slow devices raise
asyncio.TimeoutError.  The polling/dispatch loop decides what to log.
"""

import json
import logging

import aiohttp

logger = logging.getLogger("bluos-adapter.client")

BLUOS_PORT = 11000
PLAYBACK_COMMANDS = ("play", "skip", "back", "pause")


class BluOSClient:
    """Stateless request builder over a shared aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession, port: int = BLUOS_PORT,
                 timeout: float = 5.0):
        self._session = session
        self.port = port
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def url(self, address: str, path: str) -> str:
        return f"http://{address}:{self.port}{path}"

    async def send_playback_command(self, address: str, command: str) -> None:
        if command not in PLAYBACK_COMMANDS:
            raise ValueError(f"unknown playback command '{command}'")
        async with self._session.post(
            self.url(address, "/Play"),
            json={"command": command},
            timeout=self._timeout,
        ) as resp:
            resp.raise_for_status()
        logger.info("-> %s: %s", address, command)

    async def set_volume(self, address: str, level) -> None:
        async with self._session.post(
            self.url(address, "/Volume"),
            json={"volume": level},
            timeout=self._timeout,
        ) as resp:
            resp.raise_for_status()
        logger.info("-> %s: volume %s", address, level)

    async def fetch_status(self, address: str):
        """Return the /Status payload: parsed JSON if it is JSON, else text."""
        async with self._session.get(
            self.url(address, "/Status"),
            timeout=self._timeout,
        ) as resp:
            resp.raise_for_status()
            text = await resp.text()
        try:
            return json.loads(text)
        except ValueError:
            # BluOS firmware answers with XML
            return text
