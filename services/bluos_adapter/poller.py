# BluOS Adapter
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Polling/dispatch loop: keeps the state tree and the players in step.

For every device in the registry snapshot:
  - its control points exist under ``<ns>.BluOS.<name>.`` (create-if-absent),
  - one polling task fetches /Status every ``interval`` seconds and writes it
    into ``Status`` as an acknowledged value,
  - unacknowledged writes to Play/Skip/Back/Pause/Volume become HTTP calls.

One state subscription covers the whole device namespace; the handler parses
the device name out of the key.  Acknowledged writes are the adapter's own
echoes and are never dispatched.

Polling tasks live in ``self._tasks`` keyed by device name.  ``sync()`` starts
tasks for new devices and cancels tasks for removed ones; control point keys
of removed devices are left in the tree.
"""

import asyncio
import json
import logging
import math
import time

import aiohttp

logger = logging.getLogger("bluos-adapter.poller")

BUTTONS = {"Play": "play", "Skip": "skip", "Back": "back", "Pause": "pause"}


def _button(name: str) -> dict:
    return {
        "type": "state",
        "common": {
            "name": name,
            "role": "button",
            "type": "boolean",
            "read": False,
            "write": True,
            "def": False,
            "desc": name,
        },
        "native": {},
    }


CONTROL_POINTS = {
    "Play": _button("Play"),
    "Skip": _button("Skip"),
    "Back": _button("Back"),
    "Pause": _button("Pause"),
    "Volume": {
        "type": "state",
        "common": {
            "name": "Volume",
            "role": "level.volume",
            "type": "number",
            "read": True,
            "write": True,
            "def": 50,
            "desc": "Volume",
        },
        "native": {},
    },
    "Status": {
        "type": "state",
        "common": {
            "name": "Status",
            "role": "media.status",
            "type": "string",
            "read": True,
            "write": False,
            "desc": "Player Status",
        },
        "native": {},
    },
    "Online": {
        "type": "state",
        "common": {
            "name": "Online",
            "role": "indicator.reachable",
            "type": "boolean",
            "read": True,
            "write": False,
            "def": False,
            "desc": "Player answered the last status poll",
        },
        "native": {},
    },
}


def volume_level(val):
    """Numeric volume from a state value; numeric strings are accepted."""
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return val
    if isinstance(val, str):
        try:
            level = float(val.strip())
        except ValueError:
            return None
        if not math.isfinite(level):
            return None
        return int(level) if level.is_integer() else level
    return None


def serialize_status(payload) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload)


class DevicePoller:
    """Owns the per-device polling tasks and the command dispatcher."""

    def __init__(self, store, registry, client, interval: float = 1.0):
        self._store = store
        self._registry = registry
        self._client = client
        self.interval = interval
        self.prefix = f"{registry.namespace}.BluOS."
        self._tasks: dict[str, asyncio.Task] = {}
        self._online: dict[str, bool] = {}
        self._subscribed = False

    @property
    def polled_devices(self) -> list[str]:
        return sorted(self._tasks)

    def key(self, device_name: str, point: str) -> str:
        return f"{self.prefix}{device_name}.{point}"

    # ── Provisioning ──

    async def provision(self, device) -> int:
        """Create any missing control points for *device*.  Returns how many."""
        created = 0
        for point, obj in CONTROL_POINTS.items():
            if await self._store.set_object_not_exists(self.key(device.name, point), obj):
                created += 1
        if created:
            logger.info("Provisioned %d control points for %s", created, device.name)
        return created

    def subscribe(self):
        """Register the single state subscription for the device namespace."""
        if self._subscribed:
            return
        self._store.subscribe_states(f"{self.prefix}*")
        self._store.on_state_change(self.handle_state_change)
        self._subscribed = True

    async def sync(self):
        """Bring provisioning and polling tasks in line with the registry."""
        snapshot = self._registry.devices
        wanted = {d.name for d in snapshot}

        for name in list(self._tasks):
            if name not in wanted:
                self._tasks.pop(name).cancel()
                self._online.pop(name, None)
                logger.info("Stopped polling %s (removed from registry)", name)

        for device in snapshot:
            await self.provision(device)
            if self._registry.find_device(device.name) is None:
                # removed by a reload that ran while we were provisioning
                continue
            task = self._tasks.get(device.name)
            if task is None or task.done():
                self._tasks[device.name] = asyncio.create_task(
                    self._poll_loop(device.name), name=f"poll-{device.name}")
                logger.info("Polling %s @ %s every %.1fs", device.name, device.ip, self.interval)

    async def stop(self, timeout: float = 5.0):
        """Cancel every polling task.  Never waits longer than *timeout*."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning("%d polling tasks did not stop in %.1fs", len(pending), timeout)
        logger.info("Poller stopped (%d tasks cancelled)", len(tasks))

    # ── Command dispatch ──

    def parse_key(self, key: str) -> tuple[str, str] | None:
        """Split ``<ns>.BluOS.<device>.<point>`` into (device, point)."""
        if not key.startswith(self.prefix):
            return None
        parts = key[len(self.prefix):].split(".")
        if len(parts) != 2 or not all(parts):
            return None
        return parts[0], parts[1]

    async def handle_state_change(self, key: str, state) -> None:
        if state is None or state.val is None or state.ack:
            return
        parsed = self.parse_key(key)
        if parsed is None:
            return
        device_name, point = parsed
        if point not in BUTTONS and point != "Volume":
            return

        device = self._registry.find_device(device_name)
        if device is None:
            logger.warning("Ignoring %s: device '%s' is not configured", point, device_name)
            return

        try:
            if point in BUTTONS:
                if state.val is True:
                    await self._client.send_playback_command(device.ip, BUTTONS[point])
            else:
                level = volume_level(state.val)
                if level is None:
                    logger.warning("Ignoring non-numeric volume %r for %s", state.val, device_name)
                else:
                    await self._client.set_volume(device.ip, level)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("%s on %s failed: %s", point, device_name, str(e) or type(e).__name__)
        except Exception as e:
            logger.error("%s on %s raised: %s", point, device_name, e)

    # ── Status polling ──

    async def poll_once(self, device_name: str) -> bool:
        """One polling tick.  Returns True if a status was written."""
        device = self._registry.find_device(device_name)
        if device is None:
            return False
        try:
            payload = await self._client.fetch_status(device.ip)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log = logger.debug if self._online.get(device_name) is False else logger.warning
            log("Status poll of %s failed: %s", device_name, str(e) or type(e).__name__)
            await self._set_online(device_name, False)
            return False
        await self._store.set_state(self.key(device_name, "Status"),
                                    serialize_status(payload), ack=True)
        await self._set_online(device_name, True)
        logger.debug("Status of %s updated", device_name)
        return True

    async def _set_online(self, device_name: str, online: bool):
        if self._online.get(device_name) == online:
            return
        self._online[device_name] = online
        await self._store.set_state(self.key(device_name, "Online"), online, ack=True)
        if online:
            logger.info("%s is reachable", device_name)
        else:
            logger.warning("%s is unreachable", device_name)

    async def _poll_loop(self, device_name: str):
        """Tick at a fixed period; a tick never overlaps the previous one."""
        while True:
            started = time.monotonic()
            try:
                await self.poll_once(device_name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Status poll of %s raised: %s", device_name, e)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))
