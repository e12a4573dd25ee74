# BluOS Adapter
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Device registry: the adapter's cached view of the configured players.

Two configuration entries live in the state store as objects whose
``common.default`` holds a JSON array (the host UI edits them through the
schema in ``common.schema``):

    <ns>.BluOS.Devices   [{"name": "Den", "ip": "10.0.0.5"}, ...]
    <ns>.BluOS.Groups    [{"name": "Downstairs", "devices": ["Den", ...]}, ...]

The store entry is the source of truth.  The registry keeps an immutable
snapshot (tuple) of each list and swaps it by reference on every reload, so
readers always see either the old or the new list in full.  A malformed
entry resets the list to empty rather than keeping stale devices.
"""

import json
import logging
from dataclasses import dataclass

from .config import cfg

logger = logging.getLogger("bluos-adapter.registry")

DEVICES_SCHEMA = {
    "type": "array",
    "title": "Devices",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "title": "Name"},
            "ip": {"type": "string", "title": "IP Address"},
        },
    },
}

# Names become one key segment and one MQTT topic level
NAME_FORBIDDEN = (".", "/", "+", "#")

GROUPS_SCHEMA = {
    "type": "array",
    "title": "Groups",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "title": "Name"},
            "devices": {
                "type": "array",
                "title": "Devices",
                "items": {"type": "string"},
            },
        },
    },
}


@dataclass(frozen=True)
class Device:
    name: str
    ip: str

    def to_dict(self) -> dict:
        return {"name": self.name, "ip": self.ip}


@dataclass(frozen=True)
class Group:
    name: str
    devices: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"name": self.name, "devices": list(self.devices)}


def _entry_text(obj: dict | None) -> str | None:
    """Return the serialized array held by a configuration object, if any."""
    if not obj:
        return None
    common = obj.get("common") or {}
    raw = common.get("default")
    if raw is None or raw == "":
        return None
    if isinstance(raw, (list, tuple)):
        return json.dumps(raw)
    return str(raw)


def parse_devices(text: str) -> tuple[Device, ...]:
    """Parse a devices entry.  Raises ValueError if it is not well-formed."""
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("devices entry is not a JSON array")
    devices = []
    seen = set()
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"device #{i} is not an object")
        name, ip = item.get("name"), item.get("ip")
        if not isinstance(name, str) or not name:
            raise ValueError(f"device #{i} has no name")
        bad = [c for c in NAME_FORBIDDEN if c in name]
        if bad:
            raise ValueError(f"device name '{name}' contains {''.join(bad)!r}")
        if not isinstance(ip, str):
            raise ValueError(f"device '{name}' has no ip")
        if name in seen:
            raise ValueError(f"duplicate device name '{name}'")
        seen.add(name)
        devices.append(Device(name=name, ip=ip))
    return tuple(devices)


def parse_groups(text: str) -> tuple[Group, ...]:
    """Parse a groups entry.  Raises ValueError if it is not well-formed."""
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("groups entry is not a JSON array")
    groups = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise ValueError(f"group #{i} has no name")
        members = item.get("devices") or []
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            raise ValueError(f"group '{item['name']}' devices must be a list of names")
        groups.append(Group(name=item["name"], devices=tuple(members)))
    return tuple(groups)


class DeviceRegistry:
    """Owns the in-memory device and group snapshots."""

    def __init__(self, store, namespace: str):
        self._store = store
        self.namespace = namespace
        self.devices_key = f"{namespace}.BluOS.Devices"
        self.groups_key = f"{namespace}.BluOS.Groups"
        self._devices: tuple[Device, ...] = ()
        self._groups: tuple[Group, ...] = ()

    @property
    def devices(self) -> tuple[Device, ...]:
        return self._devices

    @property
    def groups(self) -> tuple[Group, ...]:
        return self._groups

    def find_device(self, name: str) -> Device | None:
        for device in self._devices:
            if device.name == name:
                return device
        return None

    async def load(self):
        """Read both configuration entries, creating missing ones."""
        devices_obj = await self._store.get_object(self.devices_key)
        if devices_obj is None:
            seed = cfg("devices", default=[])
            if not isinstance(seed, list):
                logger.warning("Config 'devices' is not a list, ignoring")
                seed = []
            await self._store.extend_object(self.devices_key, {
                "type": "config",
                "common": {"default": json.dumps(seed), "schema": DEVICES_SCHEMA},
            })
            logger.info("Created %s (%d seeded devices)", self.devices_key, len(seed))
            devices_obj = await self._store.get_object(self.devices_key)
        self._devices = self._parse_devices(devices_obj)

        groups_obj = await self._store.get_object(self.groups_key)
        if _entry_text(groups_obj) is None:
            seed = cfg("groups", default=[])
            await self._store.extend_object(self.groups_key, {
                "type": "config",
                "common": {"default": json.dumps(seed), "schema": GROUPS_SCHEMA},
            })
            logger.info("Created %s", self.groups_key)
            groups_obj = await self._store.get_object(self.groups_key)
        self._groups = self._parse_groups(groups_obj)

        logger.info("Registry loaded: %d devices, %d groups",
                    len(self._devices), len(self._groups))

    async def on_configuration_changed(self, key: str, obj: dict | None) -> bool:
        """Reload after an external edit.  Returns True if the device list changed."""
        if key == self.devices_key:
            old = self._devices
            self._devices = self._parse_devices(obj)
            changed = old != self._devices
            if changed:
                logger.info("Devices reloaded: %s",
                            ", ".join(d.name for d in self._devices) or "(none)")
            return changed
        if key == self.groups_key:
            self._groups = self._parse_groups(obj)
            logger.info("Groups reloaded: %d groups", len(self._groups))
        return False

    def _parse_devices(self, obj: dict | None) -> tuple[Device, ...]:
        text = _entry_text(obj)
        if text is None:
            return ()
        try:
            return parse_devices(text)
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring malformed %s: %s", self.devices_key, e)
            return ()

    def _parse_groups(self, obj: dict | None) -> tuple[Group, ...]:
        text = _entry_text(obj)
        if text is None:
            return ()
        try:
            groups = parse_groups(text)
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring malformed %s: %s", self.groups_key, e)
            return ()
        known = {d.name for d in self._devices}
        for group in groups:
            missing = [m for m in group.devices if m not in known]
            if missing:
                logger.debug("Group %s references unknown devices: %s", group.name, missing)
        return groups
