"""Device registry: loading, reloading and lookup."""

import json

import pytest

from bluos_adapter import config
from bluos_adapter.registry import (
    GROUPS_SCHEMA,
    Device,
    DeviceRegistry,
    Group,
    parse_devices,
)
from conftest import devices_object

NS = "bluos.0"


@pytest.fixture
def registry(store):
    return DeviceRegistry(store, NS)


class TestLoad:
    @pytest.mark.asyncio
    async def test_loads_devices_in_order(self, store, registry):
        entries = [{"name": "Den", "ip": "10.0.0.5"}, {"name": "Kitchen", "ip": "10.0.0.6"}]
        await store.set_object(registry.devices_key, devices_object(entries))

        await registry.load()

        assert registry.devices == (Device("Den", "10.0.0.5"), Device("Kitchen", "10.0.0.6"))

    @pytest.mark.asyncio
    async def test_empty_entry_gives_no_devices(self, store, registry):
        await store.set_object(registry.devices_key, devices_object(""))

        await registry.load()

        assert registry.devices == ()

    @pytest.mark.asyncio
    async def test_malformed_entry_gives_no_devices(self, store, registry):
        await store.set_object(registry.devices_key, devices_object("{not json"))

        await registry.load()

        assert registry.devices == ()

    @pytest.mark.asyncio
    async def test_missing_groups_entry_is_created_with_schema(self, store, registry):
        await registry.load()

        obj = await store.get_object(registry.groups_key)
        assert json.loads(obj["common"]["default"]) == []
        assert obj["common"]["schema"] == GROUPS_SCHEMA
        assert registry.groups == ()

    @pytest.mark.asyncio
    async def test_existing_groups_are_parsed(self, store, registry):
        await store.set_object(registry.groups_key, devices_object(
            [{"name": "Downstairs", "devices": ["Den", "Kitchen"]}]))

        await registry.load()

        assert registry.groups == (Group("Downstairs", ("Den", "Kitchen")),)

    @pytest.mark.asyncio
    async def test_missing_devices_entry_is_seeded_from_config(self, store, registry, monkeypatch):
        monkeypatch.setattr(config, "_config", {"devices": [{"name": "Den", "ip": "10.0.0.5"}]})

        await registry.load()

        assert registry.devices == (Device("Den", "10.0.0.5"),)
        obj = await store.get_object(registry.devices_key)
        assert "schema" in obj["common"]

    @pytest.mark.asyncio
    async def test_existing_devices_entry_is_not_overwritten_by_seed(self, store, registry, monkeypatch):
        monkeypatch.setattr(config, "_config", {"devices": [{"name": "Seed", "ip": "1.1.1.1"}]})
        await store.set_object(registry.devices_key, devices_object([]))

        await registry.load()

        assert registry.devices == ()


class TestConfigurationChanged:
    @pytest.mark.asyncio
    async def test_replaces_whole_list(self, registry):
        await registry.on_configuration_changed(
            registry.devices_key, devices_object([{"name": "Den", "ip": "10.0.0.5"}]))
        changed = await registry.on_configuration_changed(
            registry.devices_key, devices_object([{"name": "Office", "ip": "10.0.0.9"}]))

        assert changed is True
        assert registry.devices == (Device("Office", "10.0.0.9"),)

    @pytest.mark.asyncio
    async def test_malformed_resets_to_empty(self, registry):
        await registry.on_configuration_changed(
            registry.devices_key, devices_object([{"name": "Den", "ip": "10.0.0.5"}]))

        changed = await registry.on_configuration_changed(
            registry.devices_key, devices_object('[{"name": "Den"}]'))

        assert changed is True
        assert registry.devices == ()

    @pytest.mark.asyncio
    async def test_deleted_entry_resets_to_empty(self, registry):
        await registry.on_configuration_changed(
            registry.devices_key, devices_object([{"name": "Den", "ip": "10.0.0.5"}]))

        await registry.on_configuration_changed(registry.devices_key, None)

        assert registry.devices == ()

    @pytest.mark.asyncio
    async def test_same_list_reports_unchanged(self, registry):
        obj = devices_object([{"name": "Den", "ip": "10.0.0.5"}])
        await registry.on_configuration_changed(registry.devices_key, obj)

        assert await registry.on_configuration_changed(registry.devices_key, obj) is False

    @pytest.mark.asyncio
    async def test_groups_change_reloads_groups_only(self, registry):
        changed = await registry.on_configuration_changed(
            registry.groups_key, devices_object([{"name": "All", "devices": ["Den"]}]))

        assert changed is False
        assert registry.groups == (Group("All", ("Den",)),)

    @pytest.mark.asyncio
    async def test_old_snapshot_is_not_mutated(self, registry):
        await registry.on_configuration_changed(
            registry.devices_key, devices_object([{"name": "Den", "ip": "10.0.0.5"}]))
        before = registry.devices

        await registry.on_configuration_changed(registry.devices_key, devices_object([]))

        assert before == (Device("Den", "10.0.0.5"),)


class TestParseDevices:
    @pytest.mark.parametrize("text", [
        '{"name": "Den", "ip": "10.0.0.5"}',
        '[1, 2]',
        '[{"ip": "10.0.0.5"}]',
        '[{"name": "Den", "ip": 5}]',
        '[{"name": "Den", "ip": "a"}, {"name": "Den", "ip": "b"}]',
        '[{"name": "Living.Room", "ip": "10.0.0.7"}]',
        '[{"name": "Den/Left", "ip": "10.0.0.7"}]',
        '[{"name": "Den+", "ip": "10.0.0.7"}]',
        '[{"name": "#1", "ip": "10.0.0.7"}]',
    ])
    def test_rejects(self, text):
        with pytest.raises(ValueError):
            parse_devices(text)


def test_find_device_returns_none_when_absent(registry):
    assert registry.find_device("Nowhere") is None


@pytest.mark.asyncio
async def test_dotted_name_resets_to_empty(registry):
    await registry.on_configuration_changed(registry.devices_key, devices_object([
        {"name": "Den", "ip": "10.0.0.5"},
        {"name": "Living.Room", "ip": "10.0.0.7"},
    ]))

    assert registry.devices == ()
    assert registry.find_device("Living.Room") is None
