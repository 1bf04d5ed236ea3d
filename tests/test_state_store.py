from __future__ import annotations

import itertools
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from georelay._constants import GEOFENCES_STORAGE_KEY, IMAGE_OVERLAYS_STORAGE_KEY
from georelay.state.events import BusEvent, BusMessage
from georelay.state.persistence import FileBlobStore, MemoryBlobStore
from georelay.state.store import StateStore


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _store(**kwargs: object) -> StateStore:
    counter = itertools.count(1)
    kwargs.setdefault("clock", _Clock())
    return StateStore(id_factory=lambda: f"n{next(counter)}", **kwargs)  # type: ignore[arg-type]


def _location(mac: str, lat: float, lon: float, **extra: object) -> BusMessage:
    return BusMessage(event=BusEvent.BADGE_UPDATE, data={"mac": mac, "latitude": lat, "longitude": lon, **extra})


def _event(badge_id: str | None, hook: str, detect: str) -> BusMessage:
    data: dict[str, object] = {"hook": hook, "detect": detect, "timestamp": "2026-01-01T00:00:00.000Z"}
    if badge_id is not None:
        data["id"] = badge_id
    return BusMessage(event=BusEvent.GEOFENCE_EVENT, data=data)


def _square_geofence(name: str, size: float = 0.0003) -> dict[str, object]:
    ring = [[0.0, 0.0], [size, 0.0], [size, size], [0.0, size], [0.0, 0.0]]
    return {"name": name, "polygon": {"type": "Polygon", "coordinates": [ring]}}


def test_first_location_creates_badge() -> None:
    store = _store()

    assert store.apply(_location("b1", 1.0, 2.0, timestamp="T1"))

    badge = store.get_badge("b1")
    assert badge is not None
    assert (badge.latitude, badge.longitude, badge.timestamp) == (1.0, 2.0, "T1")
    assert [(p.lat, p.lon, p.time) for p in badge.history] == [(1.0, 2.0, "T1")]
    assert badge.status == {}


def test_partial_update_does_not_overwrite_with_none() -> None:
    store = _store()
    store.apply(_location("b1", 1.0, 2.0, radius=5, floor="2"))
    store.apply(_location("b1", 1.5, 2.5))

    badge = store.get_badge("b1")
    assert badge is not None
    assert badge.radius == 5.0
    assert badge.floor == "2"
    assert badge.latitude == 1.5
    # Missing payload timestamp falls back to the store clock.
    assert badge.timestamp == "2026-01-01T00:00:00.000Z"


def test_history_is_capped_oldest_first() -> None:
    store = _store()
    for i in range(60):
        store.apply(_location("b1", float(i), 0.0))

    badge = store.get_badge("b1")
    assert badge is not None
    assert len(badge.history) == 50
    assert badge.history[0].lat == 10.0
    assert badge.history[-1].lat == 59.0


def test_enter_event_notifies_and_updates_status() -> None:
    store = _store()
    store.apply(_location("b1", 1.0, 2.0))

    assert store.apply(_event("b1", "geofence_b1_lobby", "enter"))

    badge = store.get_badge("b1")
    assert badge is not None
    assert badge.status == {"geofence_b1_lobby": "enter"}
    assert badge.last_event is not None
    assert badge.last_event["hook"] == "geofence_b1_lobby"

    [popup] = store.active_notifications()
    assert popup.message == 'geofence for badge "b1" on fence "lobby" had enter'
    assert popup.type == "enter"
    [entry] = store.notification_history
    assert entry.geofence_name == "lobby"
    assert entry.model_dump(by_alias=True)["badgeId"] == "b1"
    assert store.events[0]["detect"] == "enter"


def test_non_boundary_event_is_logged_without_notification() -> None:
    store = _store()

    store.apply(_event("b9", "main_hall", "inside"))

    assert store.active_notifications() == []
    assert store.notification_history == []
    assert store.events[0]["hook"] == "main_hall"
    # Events never create badges.
    assert store.badges == {}


def test_event_without_badge_id_uses_unknown() -> None:
    store = _store()
    store.apply(_event(None, "geofence_x_dock", "exit"))

    [popup] = store.active_notifications()
    assert popup.message == 'geofence for badge "unknown" on fence "dock" had exit'


def test_event_log_capped_newest_first() -> None:
    store = _store()
    for i in range(105):
        store.apply(_event("b1", f"hook{i}", "dwell"))

    assert len(store.events) == 100
    assert store.events[0]["hook"] == "hook104"
    assert store.events[-1]["hook"] == "hook5"


def test_notification_history_capped() -> None:
    store = _store()
    for i in range(1005):
        store.apply(_event("b1", f"geofence_b1_zone{i}", "enter"))

    assert len(store.notification_history) == 1000
    assert store.notification_history[0].geofence_name == "zone1004"

    store.clear_notification_history()
    assert store.notification_history == []


def test_popups_expire_and_can_be_dismissed() -> None:
    clock = _Clock()
    store = _store(clock=clock)
    store.apply(_event("b1", "geofence_b1_a", "enter"))
    clock.advance(4)
    store.apply(_event("b1", "geofence_b1_b", "exit"))

    assert len(store.active_notifications()) == 2
    clock.advance(5)
    [remaining] = store.active_notifications()
    assert remaining.geofence_name == "b"

    store.dismiss_notification(remaining.id)
    assert store.active_notifications() == []
    # Dismissal never touches the history.
    assert len(store.notification_history) == 2


def test_publish_acknowledgements_raise_popups() -> None:
    store = _store()

    store.apply(BusMessage(event=BusEvent.PUBLISH_SUCCESS, data={"topic": "old/assets/m/location"}))
    store.apply(BusMessage(event=BusEvent.PUBLISH_ERROR, data={"error": "MQTT client not connected"}))

    success, error = store.active_notifications()
    assert success.type == "success"
    assert success.message == "Successfully published badge location to MQTT topic: old/assets/m/location"
    assert error.type == "error"
    assert error.message == "Failed to publish to MQTT: MQTT client not connected"
    assert store.notification_history == []


def test_failed_merge_is_skipped() -> None:
    store = _store()

    assert not store.apply(BusMessage(event=BusEvent.BADGE_UPDATE, data={"mac": "b1"}))
    assert not store.apply(BusMessage(event=BusEvent.GEOFENCE_DATA, data={"name": "g"}))
    assert not store.apply(BusMessage(event="something_else", data={}))
    assert store.badges == {}
    assert store.geofences == {}


def test_geofence_with_non_numeric_positions_is_rejected_whole() -> None:
    store = _store()
    store.upsert_geofence(_square_geofence("good"))
    before = store.viewport
    bad = {"name": "bad", "polygon": {"type": "Polygon", "coordinates": [[["a", "b"], [1, 2]]]}}

    assert not store.apply(BusMessage(event=BusEvent.GEOFENCE_DATA, data=bad))
    assert list(store.geofences) == ["good"]
    assert store.viewport == before

    store.replace_geofences([bad, _square_geofence("other")])
    assert list(store.geofences) == ["other"]


def test_expired_popups_are_dropped_without_being_read() -> None:
    clock = _Clock()
    store = _store(clock=clock)

    for n in range(500):
        store.apply(_event("b1", f"geofence_b1_zone{n}", "enter"))
        clock.advance(1)
    store.apply(BusMessage(event=BusEvent.PUBLISH_ERROR, data={"error": "offline"}))

    # Only popups younger than the 8 s TTL are retained.
    assert len(store._notifications) == 8
    assert len(store.notification_history) == 500


def test_add_and_delete_badge() -> None:
    store = _store()
    store.apply(_location("b1", 1.0, 2.0))
    store.apply(_event("b1", "geofence_b1_a", "enter"))

    badge = store.add_badge("b1", 3.0, 4.0, radius=2.0)

    assert badge.history == []
    assert badge.status == {}
    assert store.delete_badge("b1")
    assert not store.delete_badge("b1")


def test_first_geofence_fits_viewport_with_zoom_floor() -> None:
    store = _store()

    store.apply(BusMessage(event=BusEvent.GEOFENCE_DATA, data=_square_geofence("wide", 0.004)))

    assert store.viewport is not None
    assert store.viewport.zoom == 19
    assert store.viewport.center_lat == pytest.approx(0.002)

    store.upsert_geofence(_square_geofence("small", 0.0001))
    assert store.viewport.zoom == 19

    fitted = store.fit_viewport()
    assert fitted is not None
    assert fitted.zoom == 18


def test_geofence_upsert_replaces_by_name_and_closes_lines() -> None:
    store = _store()
    store.upsert_geofence(_square_geofence("g1"))
    store.apply(
        BusMessage(
            event=BusEvent.GEOFENCE_DATA,
            data={"hook": "g1", "object": {"type": "LineString", "coordinates": [[0, 0], [1, 0], [1, 1]]}},
        )
    )

    [geofence] = store.geofences.values()
    assert geofence.polygon.type == "Polygon"
    assert geofence.polygon.coordinates == [[[0, 0], [1, 0], [1, 1], [0, 0]]]

    assert store.delete_geofence("g1")
    assert not store.delete_geofence("g1")


def test_deleting_geofence_keeps_badge_status() -> None:
    store = _store()
    store.apply(_location("b1", 1.0, 2.0))
    store.upsert_geofence(_square_geofence("geofence_b1_lobby"))
    store.apply(_event("b1", "geofence_b1_lobby", "enter"))

    store.delete_geofence("geofence_b1_lobby")

    badge = store.get_badge("b1")
    assert badge is not None
    assert badge.status == {"geofence_b1_lobby": "enter"}


def test_load_test_data_resets_badges_and_closes_lines() -> None:
    store = _store()
    store.apply(_location("old", 1.0, 1.0))

    store.load_test_data(
        {
            "badges": [
                {"mac": "t1", "latitude": 1.0, "longitude": 2.0, "history": [{"lat": 0, "lon": 0}]},
                {"latitude": 5.0},
            ],
            "geofences": [{"name": "line", "polygon": {"type": "LineString", "coordinates": [[0, 0], [0.0001, 0], [0.0001, 0.0001]]}}],
        }
    )

    assert list(store.badges) == ["t1"]
    assert store.badges["t1"].history == []
    assert store.geofences["line"].polygon.type == "Polygon"
    assert store.viewport is not None


def test_image_overlays_crud() -> None:
    store = _store()
    bounds = {"south": 0, "north": 1, "west": 0, "east": 1}
    store.add_image_overlay({"id": "o1", "name": "Floor 1", "url": "u1", "bounds": bounds})

    assert store.update_image_overlay({"id": "o1", "name": "Floor 1", "url": "u1", "bounds": bounds, "opacity": 0.3})
    assert store.image_overlays[0].opacity == 0.3
    assert not store.update_image_overlay({"id": "missing", "name": "x", "url": "u", "bounds": bounds})
    assert store.delete_image_overlay("o1")
    assert store.image_overlays == []


def test_export_import_round_trip() -> None:
    source = _store()
    source.upsert_geofence({**_square_geofence("g1"), "strokeColor": "#00ff00"})
    source.add_image_overlay({"id": "o1", "name": "Floor", "url": "u", "bounds": {"south": 0, "north": 1, "west": 0, "east": 1}})

    document = source.export_config()
    assert document["version"] == "1.0"
    assert document["exportedAt"] == "2026-01-01T00:00:00.000Z"

    target = _store()
    result = target.import_config(json.loads(json.dumps(document)))

    assert (result.image_overlays, result.geofences) == (1, 1)
    assert target.geofences["g1"].stroke_color == "#00ff00"
    assert target.image_overlays[0].id == "o1"
    assert target.viewport is not None


def test_import_merge_and_replace() -> None:
    store = _store()
    store.upsert_geofence(_square_geofence("keep"))
    store.upsert_geofence(_square_geofence("shared", 0.0001))

    store.import_config({"geofences": [_square_geofence("shared", 0.0002), {"name": "bad"}]}, replace_geofences=False)
    assert set(store.geofences) == {"keep", "shared"}
    assert store.geofences["shared"].polygon.coordinates[0][1] == [0.0002, 0.0]

    store.import_config({"geofences": [_square_geofence("only")]})
    assert set(store.geofences) == {"only"}


def test_import_bare_overlay_list_and_invalid_document() -> None:
    store = _store()
    bounds = {"south": 0, "north": 1, "west": 0, "east": 1}
    store.add_image_overlay({"id": "o1", "name": "a", "url": "u", "bounds": bounds})

    store.import_config(
        [{"id": "o1", "name": "dup", "url": "u", "bounds": bounds}, {"id": "o2", "name": "b", "url": "u", "bounds": bounds}],
        replace_overlays=False,
    )
    assert [(o.id, o.name) for o in store.image_overlays] == [("o1", "a"), ("o2", "b")]

    with pytest.raises(ValueError):
        store.import_config({"something": []})


def test_geofences_and_overlays_persist_through_blob_store() -> None:
    blobs = MemoryBlobStore()
    store = _store(blob_store=blobs)
    store.upsert_geofence(_square_geofence("g1"))
    store.add_image_overlay({"id": "o1", "name": "a", "url": "u", "bounds": {"south": 0, "north": 1, "west": 0, "east": 1}})

    saved = json.loads(blobs.load(GEOFENCES_STORAGE_KEY) or "[]")
    assert saved[0]["name"] == "g1"
    assert blobs.load(IMAGE_OVERLAYS_STORAGE_KEY) is not None

    restored = _store(blob_store=blobs)
    assert set(restored.geofences) == {"g1"}
    assert restored.image_overlays[0].id == "o1"


def test_corrupt_persisted_blob_is_ignored() -> None:
    blobs = MemoryBlobStore({GEOFENCES_STORAGE_KEY: "{not json"})

    store = _store(blob_store=blobs)

    assert store.geofences == {}


def test_file_blob_store(tmp_path: Path) -> None:
    blobs = FileBlobStore(tmp_path / "state")

    assert blobs.load(GEOFENCES_STORAGE_KEY) is None
    blobs.save(GEOFENCES_STORAGE_KEY, "[]")
    assert blobs.load(GEOFENCES_STORAGE_KEY) == "[]"
    assert (tmp_path / "state" / f"{GEOFENCES_STORAGE_KEY}.json").exists()
