#!/usr/bin/env python3
# BluOS Adapter
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BluOS Adapter service (bluos-adapter)

Mirrors the configured BluOS players into the host's state tree, turns
state writes into player commands and polls player status back.

Startup:
  1. info.connection = false (ack)
  2. open HTTP session, start the state store
  3. load the registry, subscribe to its configuration entries
  4. subscribe to <ns>.BluOS.*, provision + start polling
  5. info.connection = true (ack)

Optional status endpoint (adapter.status_port > 0):
  GET /adapter/status: connection flag, devices, groups, polled devices
"""

import asyncio
import logging
import os
import signal

import aiohttp
from aiohttp import web

from .client import BluOSClient
from .config import cfg
from .poller import DevicePoller
from .registry import DeviceRegistry
from .state_store import create_state_store
from .watchdog import sd_notify, watchdog_loop

logger = logging.getLogger("bluos-adapter")

CONNECTION_KEY = "info.connection"
CONNECTION_OBJECT = {
    "type": "state",
    "common": {
        "name": "Device or service connected",
        "role": "indicator.connected",
        "type": "boolean",
        "read": True,
        "write": False,
        "def": False,
    },
    "native": {},
}


class BluOSAdapter:
    """Wires the state store, registry, HTTP client and poller together."""

    def __init__(self, store=None, namespace: str | None = None,
                 poll_interval: float | None = None,
                 session: aiohttp.ClientSession | None = None):
        self.namespace = namespace or cfg("adapter", "namespace", default="bluos.0")
        self.store = store if store is not None else create_state_store()
        self.registry = DeviceRegistry(self.store, self.namespace)
        self.poll_interval = float(poll_interval if poll_interval is not None
                                   else cfg("adapter", "poll_interval", default=1.0))
        self.request_timeout = float(cfg("adapter", "request_timeout", default=5.0))
        self.status_port = int(cfg("adapter", "status_port", default=0))

        self._session = session
        self._owns_session = session is None
        self.client: BluOSClient | None = None
        self.poller: DevicePoller | None = None
        self.connected = False
        self._runner: web.AppRunner | None = None
        self._watchdog_task: asyncio.Task | None = None

    @property
    def connection_key(self) -> str:
        return f"{self.namespace}.{CONNECTION_KEY}"

    # ── Lifecycle ──

    async def start(self):
        await self.store.set_object_not_exists(self.connection_key, CONNECTION_OBJECT)
        await self._set_connection(False)

        if self._session is None:
            self._session = aiohttp.ClientSession()
        self.client = BluOSClient(self._session, timeout=self.request_timeout)
        self.poller = DevicePoller(self.store, self.registry, self.client,
                                   interval=self.poll_interval)

        await self.store.start()
        await self.registry.load()

        self.store.subscribe_objects(self.registry.devices_key)
        self.store.subscribe_objects(self.registry.groups_key)
        self.store.on_object_change(self.on_object_change)

        self.poller.subscribe()
        await self.poller.sync()

        await self._set_connection(True)
        logger.info("Adapter %s ready: %d devices", self.namespace, len(self.registry.devices))

        if self.status_port:
            await self._start_status_server()
        self._watchdog_task = asyncio.create_task(
            watchdog_loop(status=lambda: f"{len(self.registry.devices)} devices"))

    async def shutdown(self):
        """Clean up resources.  Every step runs even if an earlier one fails."""
        logger.info("Adapter %s shutting down", self.namespace)
        sd_notify("STOPPING=1")

        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        if self.poller:
            try:
                await self.poller.stop()
            except Exception as e:
                logger.error("Poller stop failed: %s", e)

        try:
            await self._set_connection(False)
        except Exception as e:
            logger.error("Could not clear %s: %s", self.connection_key, e)

        try:
            await self.store.stop()
        except Exception as e:
            logger.error("State store stop failed: %s", e)

        if self._runner:
            try:
                await self._runner.cleanup()
            except Exception as e:
                logger.error("Status server cleanup failed: %s", e)
            self._runner = None

        if self._session and self._owns_session:
            try:
                await self._session.close()
            except Exception as e:
                logger.error("HTTP session close failed: %s", e)
            self._session = None

        logger.info("Adapter %s stopped", self.namespace)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await self.start()
            await stop_event.wait()
        finally:
            await self.shutdown()

    # ── Handlers ──

    async def on_object_change(self, key: str, obj: dict | None):
        """Configuration entry edited externally: reload and resync."""
        if key not in (self.registry.devices_key, self.registry.groups_key):
            return
        changed = await self.registry.on_configuration_changed(key, obj)
        if changed and self.poller:
            await self.poller.sync()

    async def _set_connection(self, connected: bool):
        self.connected = connected
        await self.store.set_state(self.connection_key, connected, ack=True)

    # ── Status endpoint ──

    def status(self) -> dict:
        return {
            "namespace": self.namespace,
            "connected": self.connected,
            "poll_interval": self.poll_interval,
            "devices": [d.to_dict() for d in self.registry.devices],
            "groups": [g.to_dict() for g in self.registry.groups],
            "polling": self.poller.polled_devices if self.poller else [],
        }

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.status())

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/adapter/status", self._handle_status)
        return app

    async def _start_status_server(self):
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.status_port)
        await site.start()
        logger.info("Status endpoint on port %d", self.status_port)


async def main():
    adapter = BluOSAdapter()
    await adapter.run()


def cli():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(main())


if __name__ == "__main__":
    cli()
