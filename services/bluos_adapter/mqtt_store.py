"""
MQTT-mirrored state store.

Keeps the tree in-process (see MemoryStateStore) and mirrors it onto an MQTT
broker so the host platform, dashboards or automations can read and write it.

Topic structure ({prefix}/{key with dots as slashes}):
    {prefix}/bluos/0/BluOS/Den/Volume            retained {"val", "ack", "ts"}
    {prefix}/bluos/0/BluOS/Den/Volume/set        inbound command (ack=False)
    {prefix}/bluos/0/BluOS/Devices/$object       retained object JSON
    {prefix}/bluos/0/BluOS/Devices/$object/set   inbound object replacement
    {prefix}/bluos-adapter/status                retained online/offline + will

Retained objects are the durable copy: on connect the store drains them
first and adopts any key it does not hold, then republishes its own tree.

Usage:
    store = MqttStateStore("homeassistant.local", 1883, "iobroker")
    await store.start()
    ...
    await store.stop()
"""

import asyncio
import json
import logging
import os

import aiomqtt

from .state_store import MemoryStateStore, State

logger = logging.getLogger("bluos-adapter.store.mqtt")

OBJECT_SUFFIX = "$object"
SET_SUFFIX = "set"
RETAINED_SETTLE = 1.0  # seconds of silence that end the retained burst


def _payload_text(payload) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="replace")
    return "" if payload is None else str(payload)


class MqttStateStore(MemoryStateStore):
    """In-process tree with an MQTT mirror and inbound command topics."""

    def __init__(self, broker: str, port: int = 1883, prefix: str = "iobroker",
                 connect_timeout: float = 10.0):
        super().__init__()
        self.broker = broker
        self.port = port
        self.prefix = prefix.rstrip("/")
        self.username = os.getenv("MQTT_USER", "")
        self.password = os.getenv("MQTT_PASSWORD", "")
        self.topic_status = f"{self.prefix}/bluos-adapter/status"

        self._client: aiomqtt.Client | None = None
        self._task: asyncio.Task | None = None
        self.connect_timeout = connect_timeout
        self._ready = asyncio.Event()
        self._running = False

    # -- Topic mapping --

    def topic_for(self, key: str) -> str:
        return f"{self.prefix}/{key.replace('.', '/')}"

    def key_for(self, topic: str) -> str | None:
        """Map an inbound topic back to a key, or None if outside the prefix."""
        head = self.prefix + "/"
        if not topic.startswith(head):
            return None
        path = topic[len(head):].strip("/")
        return path.replace("/", ".") or None

    # -- Overrides: write locally, then mirror --

    async def set_state(self, key: str, val, ack: bool = False) -> State:
        state = await super().set_state(key, val, ack)
        await self._publish(self.topic_for(key), {"val": state.val, "ack": state.ack, "ts": state.ts})
        return state

    async def set_object(self, key: str, obj: dict) -> None:
        await super().set_object(key, obj)
        await self._publish(f"{self.topic_for(key)}/{OBJECT_SUFFIX}", obj)

    async def _publish(self, topic: str, payload) -> None:
        if not self._client:
            return
        try:
            await self._client.publish(topic, json.dumps(payload), qos=1, retain=True)
        except Exception as e:
            logger.warning("MQTT publish to %s failed: %s", topic, e)

    async def _republish_all(self) -> None:
        for key, obj in list(self._objects.items()):
            await self._publish(f"{self.topic_for(key)}/{OBJECT_SUFFIX}", obj)
        for key, state in list(self._states.items()):
            await self._publish(self.topic_for(key), {"val": state.val, "ack": state.ack, "ts": state.ts})

    # -- Inbound --

    async def handle_message(self, topic: str, payload) -> None:
        """Apply an inbound ``.../set``, ``.../$object/set`` or retained ``.../$object``."""
        parts = topic.rstrip("/").split("/")
        if len(parts) >= 2 and parts[-1] == OBJECT_SUFFIX:
            await self._adopt_object(topic, "/".join(parts[:-1]), payload)
            return
        if len(parts) < 2 or parts[-1] != SET_SUFFIX:
            return
        is_object = parts[-2] == OBJECT_SUFFIX
        base = "/".join(parts[:-2] if is_object else parts[:-1])
        key = self.key_for(base)
        if not key:
            return

        text = _payload_text(payload)
        if is_object:
            if not text:
                await self.delete_object(key)
                return
            try:
                obj = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("MQTT invalid object JSON on %s", topic)
                return
            if not isinstance(obj, dict):
                logger.warning("MQTT object on %s is not a JSON object", topic)
                return
            logger.info("Object %s replaced via MQTT", key)
            await self.set_object(key, obj)
            return

        try:
            val = json.loads(text) if text else None
        except json.JSONDecodeError:
            val = text
        ack = False
        if isinstance(val, dict) and "val" in val:
            ack = bool(val.get("ack", False))
            val = val["val"]
        logger.debug("MQTT write %s = %r (ack=%s)", key, val, ack)
        await self.set_state(key, val, ack=ack)

    async def _adopt_object(self, topic: str, base: str, payload) -> None:
        """Take a retained object from the broker unless we already hold one.

        The broker copy is what survives a restart, so it wins over the
        defaults the adapter would otherwise create.  Once an object exists
        locally, the retained topic is only our own mirror.
        """
        key = self.key_for(base)
        if not key or key in self._objects:
            return
        text = _payload_text(payload)
        if not text:
            return
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("MQTT invalid retained object on %s", topic)
            return
        if not isinstance(obj, dict):
            return
        logger.info("Object %s restored from broker", key)
        await MemoryStateStore.set_object(self, key, obj)

    # -- Lifecycle --

    async def start(self) -> None:
        """Connect and wait until retained objects are loaded (or give up)."""
        self._running = True
        self._ready.clear()
        self._task = asyncio.create_task(self._mqtt_loop())
        logger.info("MQTT store starting -> %s:%d", self.broker, self.port)
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("MQTT broker not ready after %.0fs, starting from local state",
                           self.connect_timeout)

    async def stop(self) -> None:
        self._running = False
        if self._client:
            try:
                await self._client.publish(
                    self.topic_status, json.dumps({"status": "offline"}), qos=1, retain=True)
            except Exception as e:
                logger.debug("MQTT offline publish failed: %s", e)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._client = None
        logger.info("MQTT store stopped")

    async def _dispatch(self, message) -> None:
        try:
            await self.handle_message(str(message.topic), message.payload)
        except Exception as e:
            logger.error("MQTT message handling failed for %s: %s", message.topic, e)

    async def _mqtt_loop(self):
        """Connect to the broker with auto-reconnect and exponential backoff."""
        backoff = 1
        max_backoff = 30

        while self._running:
            try:
                will = aiomqtt.Will(
                    topic=self.topic_status,
                    payload=json.dumps({"status": "offline"}),
                    qos=1,
                    retain=True,
                )
                async with aiomqtt.Client(
                    hostname=self.broker,
                    port=self.port,
                    username=self.username or None,
                    password=self.password or None,
                    will=will,
                ) as client:
                    self._client = client
                    backoff = 1

                    await client.publish(
                        self.topic_status, json.dumps({"status": "online"}), qos=1, retain=True)
                    logger.info("MQTT connected to %s:%d", self.broker, self.port)
                    await client.subscribe(f"{self.prefix}/#")

                    # Retained messages arrive first; take them before mirroring ours
                    messages = aiter(client.messages)
                    while True:
                        try:
                            message = await asyncio.wait_for(anext(messages), timeout=RETAINED_SETTLE)
                        except asyncio.TimeoutError:
                            break
                        await self._dispatch(message)
                    await self._republish_all()
                    self._ready.set()

                    async for message in messages:
                        await self._dispatch(message)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._client = None
                logger.warning("MQTT connection lost (%s), reconnecting in %ds", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

        self._client = None
