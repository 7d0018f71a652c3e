"""Tests for the shared settings store."""

import asyncio
import json

import pytest

from pastr.daemon.bus import Event, EventBus
from pastr.daemon.settings import (
    CAPTURE_ENABLED_KEY,
    SYNC_INTERVAL_KEY,
    ScheduleState,
    SettingsStore,
    coerce_enabled,
    coerce_interval,
)


@pytest.mark.asyncio
async def test_set_persists_and_publishes_change(tmp_path):
    bus = EventBus()
    await bus.start()
    changes = []

    async def on_change(event: Event):
        changes.append(event.data)

    bus.subscribe("settings.changed", on_change)
    store = SettingsStore(tmp_path / "settings.json", bus=bus, defaults={SYNC_INTERVAL_KEY: 0})
    await store.load()

    assert await store.set(SYNC_INTERVAL_KEY, 15, origin="external") is True
    # Same value again is not a change
    assert await store.set(SYNC_INTERVAL_KEY, 15) is False
    await asyncio.sleep(0.1)

    assert changes == [{
        "key": SYNC_INTERVAL_KEY,
        "old_value": 0,
        "new_value": 15,
        "origin": "external",
    }]
    stored = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    assert stored[SYNC_INTERVAL_KEY] == 15
    await bus.stop()


@pytest.mark.asyncio
async def test_load_merges_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({CAPTURE_ENABLED_KEY: True}), encoding="utf-8")

    store = SettingsStore(path, bus=EventBus(), defaults={SYNC_INTERVAL_KEY: 30, CAPTURE_ENABLED_KEY: False})
    await store.load()

    assert store.schedule_state() == ScheduleState(sync_interval_minutes=30, capture_enabled=True)


@pytest.mark.asyncio
async def test_corrupted_settings_fall_back_to_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{ not json", encoding="utf-8")

    store = SettingsStore(path, bus=EventBus(), defaults={SYNC_INTERVAL_KEY: 5})
    await store.load()

    assert store.get(SYNC_INTERVAL_KEY) == 5
    assert not path.exists()
    assert (tmp_path / "settings.corrupted.json").exists()


@pytest.mark.asyncio
async def test_invalid_stored_interval_means_disabled(tmp_path):
    store = SettingsStore(tmp_path / "settings.json", bus=EventBus())
    await store.load()
    await store.set(SYNC_INTERVAL_KEY, -3)

    assert store.schedule_state().sync_interval_minutes == 0


def test_coerce_interval():
    assert coerce_interval(10) == 10
    assert coerce_interval(5.0) == 5
    assert coerce_interval(0) == 0
    with pytest.raises(ValueError):
        coerce_interval(2.5)
    with pytest.raises(ValueError):
        coerce_interval("10")
    with pytest.raises(ValueError):
        coerce_interval(-1)
    with pytest.raises(ValueError):
        coerce_interval(True)
    with pytest.raises(ValueError):
        coerce_interval("soon")


def test_coerce_enabled_rejects_strings():
    assert coerce_enabled(True) is True
    assert coerce_enabled(False) is False
    for value in ("false", "true", 0, 1, None):
        with pytest.raises(ValueError):
            coerce_enabled(value)


@pytest.mark.asyncio
async def test_stored_string_capture_flag_means_disabled(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({CAPTURE_ENABLED_KEY: "false", SYNC_INTERVAL_KEY: 2.5}), encoding="utf-8")

    store = SettingsStore(path, bus=EventBus())
    await store.load()

    assert store.schedule_state() == ScheduleState(sync_interval_minutes=0, capture_enabled=False)


@pytest.mark.asyncio
async def test_settings_with_invalid_utf8_are_quarantined(tmp_path):
    path = tmp_path / "settings.json"
    path.write_bytes(b'{"capture_enabled": "\xff\xfe"}')

    store = SettingsStore(path, bus=EventBus(), defaults={CAPTURE_ENABLED_KEY: False})
    await store.load()

    assert store.get(CAPTURE_ENABLED_KEY) is False
    assert (tmp_path / "settings.corrupted.json").read_bytes().startswith(b'{"capture_enabled"')
