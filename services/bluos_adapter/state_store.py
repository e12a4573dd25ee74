# BluOS Adapter
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
State store seam between the adapter and the home-automation host.

The host owns a hierarchical tree of dot-separated keys.  Each key can hold
an *object* (metadata: ``{"type", "common", "native"}``) and a *state*
(``State(val, ack, ts)``).  ``ack=False`` means "command requested by a user
or automation"; ``ack=True`` means "fact reported by the adapter".

Subscription contract:

    store.on_state_change(handler)     # async def handler(key, state)
    store.on_object_change(handler)    # async def handler(key, obj)
    store.subscribe_states("bluos.0.BluOS.*")
    store.subscribe_objects("bluos.0.BluOS.Devices")

Patterns are exact keys or ``*`` wildcards.  Only subscribed keys notify.
A handler that raises is logged; the writer never sees the exception.

Bindings:
    MemoryStateStore: in-process tree (standalone runs, tests)
    MqttStateStore:   in-process tree mirrored onto an MQTT broker
"""

import copy
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

from .config import cfg

logger = logging.getLogger("bluos-adapter.store")


@dataclass(frozen=True)
class State:
    val: object
    ack: bool = False
    ts: float = field(default_factory=time.time)


def _deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for k, v in patch.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = copy.deepcopy(v)
    return merged


class StateStore(ABC):
    """Interface every host binding must implement."""

    def __init__(self):
        self._state_patterns: set[str] = set()
        self._object_patterns: set[str] = set()
        self._state_handlers: list = []
        self._object_handlers: list = []

    # -- Objects --

    @abstractmethod
    async def get_object(self, key: str) -> dict | None: ...

    @abstractmethod
    async def set_object(self, key: str, obj: dict) -> None: ...

    async def set_object_not_exists(self, key: str, obj: dict) -> bool:
        """Create *obj* at *key* unless something is already there."""
        if await self.get_object(key) is not None:
            return False
        await self.set_object(key, obj)
        return True

    async def extend_object(self, key: str, patch: dict) -> dict:
        """Deep-merge *patch* into the object at *key* (created if absent)."""
        existing = await self.get_object(key) or {"type": "state", "common": {}, "native": {}}
        merged = _deep_merge(existing, patch)
        await self.set_object(key, merged)
        return merged

    # -- States --

    @abstractmethod
    async def get_state(self, key: str) -> State | None: ...

    @abstractmethod
    async def set_state(self, key: str, val, ack: bool = False) -> State: ...

    # -- Subscriptions --

    def subscribe_states(self, pattern: str) -> None:
        self._state_patterns.add(pattern)

    def subscribe_objects(self, pattern: str) -> None:
        self._object_patterns.add(pattern)

    def on_state_change(self, handler) -> None:
        self._state_handlers.append(handler)

    def on_object_change(self, handler) -> None:
        self._object_handlers.append(handler)

    @staticmethod
    def _matches(patterns: set[str], key: str) -> bool:
        return any(p == key or fnmatchcase(key, p) for p in patterns)

    async def _notify_state(self, key: str, state: State | None) -> None:
        if not self._matches(self._state_patterns, key):
            return
        for handler in list(self._state_handlers):
            try:
                await handler(key, state)
            except Exception as e:
                logger.error("State handler failed for %s: %s", key, e)

    async def _notify_object(self, key: str, obj: dict | None) -> None:
        if not self._matches(self._object_patterns, key):
            return
        for handler in list(self._object_handlers):
            try:
                await handler(key, obj)
            except Exception as e:
                logger.error("Object handler failed for %s: %s", key, e)

    # -- Lifecycle (bindings with a connection override these) --

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class MemoryStateStore(StateStore):
    """In-process state tree.  Notifications are awaited inline by the writer."""

    def __init__(self):
        super().__init__()
        self._objects: dict[str, dict] = {}
        self._states: dict[str, State] = {}

    async def get_object(self, key: str) -> dict | None:
        obj = self._objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    async def set_object(self, key: str, obj: dict) -> None:
        self._objects[key] = copy.deepcopy(obj)
        await self._notify_object(key, copy.deepcopy(obj))

    async def delete_object(self, key: str) -> None:
        if self._objects.pop(key, None) is not None:
            await self._notify_object(key, None)

    async def get_state(self, key: str) -> State | None:
        return self._states.get(key)

    async def set_state(self, key: str, val, ack: bool = False) -> State:
        state = State(val=val, ack=ack)
        self._states[key] = state
        await self._notify_state(key, state)
        return state

    def keys(self) -> list[str]:
        return sorted(self._objects)


def create_state_store() -> StateStore:
    """Pick the host binding from config.json ``store.type``."""
    store_type = str(cfg("store", "type", default="memory")).lower()
    if store_type == "mqtt":
        from .mqtt_store import MqttStateStore
        broker = cfg("store", "mqtt_broker", default="localhost")
        port = int(cfg("store", "mqtt_port", default=1883))
        prefix = cfg("store", "topic_prefix", default="iobroker")
        logger.info("State store: MQTT @ %s:%d (prefix %s)", broker, port, prefix)
        return MqttStateStore(broker, port, prefix)
    if store_type != "memory":
        logger.warning("Unknown store.type '%s', falling back to memory", store_type)
    logger.info("State store: in-memory")
    return MemoryStateStore()
