from __future__ import annotations

from navio_fakes import make_zone, square

from zone_admin.navio.clients.provider import ProviderZone
from zone_admin.navio.pipeline.delta import UNKNOWN_CITY, compute_delta
from zone_admin.navio.pipeline.snapshot import SnapshotStore, SnapshotZone


def snapshot_zone(zone_id, name, *, city="Oslo", active=True, geofence=None) -> SnapshotZone:
    return SnapshotZone(
        id=zone_id,
        name=name,
        display_name=None,
        city_name=city,
        country_code="NO",
        geofence=geofence,
        is_active=active,
        snapshot_at=None,
    )


def test_scenario_new_zone_next_to_unchanged_one():
    snapshot = {1: snapshot_zone(1, "Oslo Sentrum")}
    live = [
        ProviderZone(id=1, name="Oslo Sentrum", city_hint="Oslo"),
        ProviderZone(id=2, name="Grünerløkka", city_hint="Oslo"),
    ]

    delta = compute_delta(live, snapshot)

    assert delta.summary()["new"] == 1
    assert delta.summary()["unchanged"] == 1
    assert delta.has_changes is True
    assert "Oslo" in delta.affected_cities
    assert [area["id"] for area in delta.new_areas] == [2]


def test_first_import_marks_everything_new():
    delta = compute_delta([make_zone(1, "A"), make_zone(2, "B", city=None)], {})

    assert delta.is_first_import
    assert delta.summary() == {"new": 2, "removed": 0, "changed": 0, "geofenceChanged": 0, "unchanged": 0}
    assert delta.affected_cities == sorted(["Oslo", UNKNOWN_CITY])


def test_every_zone_lands_in_exactly_one_bucket():
    shape_a = square(10.0, 59.0)
    shape_b = square(11.0, 60.0)
    snapshot = {
        1: snapshot_zone(1, "Same", geofence=shape_a),
        2: snapshot_zone(2, "Old name", geofence=shape_a),
        3: snapshot_zone(3, "Reshaped", geofence=shape_a),
        4: snapshot_zone(4, "Gone", city="Bergen", geofence=shape_a),
        5: snapshot_zone(5, "Turned off", geofence=shape_a),
        6: snapshot_zone(6, "Still off", active=False, geofence=shape_a),
        7: snapshot_zone(7, "Back on", active=False, geofence=shape_a),
    }
    live = [
        make_zone(1, "Same", geofence=shape_a),
        make_zone(2, "New name", geofence=shape_a),
        make_zone(3, "Reshaped", geofence=shape_b),
        make_zone(5, "Turned off", active=False, geofence=shape_a),
        make_zone(6, "Still off", active=False, geofence=shape_a),
        make_zone(7, "Back on", geofence=shape_a),
        make_zone(8, "Brand new", city="Trondheim", geofence=shape_b),
    ]

    delta = compute_delta(live, snapshot)

    classified = delta.classified_ids
    assert sorted(classified) == list(range(1, 9))
    assert len(classified) == len(set(classified))

    assert [area["id"] for area in delta.new_areas] == [8]
    assert {area["id"]: area["reason"] for area in delta.removed_areas} == {4: "missing", 5: "inactive"}
    assert [area["id"] for area in delta.changed_areas] == [2, 3, 7]
    assert sorted(delta.unchanged_ids) == [1, 6]
    assert delta.geofence_changed == 1
    assert delta.affected_cities == ["Bergen", "Oslo", "Trondheim"]


def test_renamed_and_reshaped_zone_counts_once_in_changed_and_once_in_geofence_changed():
    snapshot = {1: snapshot_zone(1, "Old", geofence=square(10.0, 59.0))}
    live = [make_zone(1, "New", geofence=square(10.5, 59.0))]

    delta = compute_delta(live, snapshot)

    assert delta.summary()["changed"] == 1
    assert delta.summary()["geofenceChanged"] == 1
    assert delta.changed_areas[0]["changes"] == ["name", "geofence"]


def test_geofence_appearing_counts_as_change():
    snapshot = {1: snapshot_zone(1, "Zone", geofence=None)}
    delta = compute_delta([make_zone(1, "Zone", geofence=square(10.0, 59.0))], snapshot)
    assert delta.geofence_changed == 1


def test_no_changes():
    shape = square(10.0, 59.0)
    delta = compute_delta([make_zone(1, "Zone", geofence=shape)], {1: snapshot_zone(1, "Zone", geofence=shape)})
    assert delta.has_changes is False
    assert delta.affected_cities == []


def test_removed_zone_uses_snapshot_city():
    kept = ProviderZone(id=1, name="Kept", city_hint="Oslo")
    delta = compute_delta([kept], {1: snapshot_zone(1, "Kept"), 2: snapshot_zone(2, "Lost", city="Bergen")})
    assert delta.removed_areas == [{"id": 2, "name": "Lost", "city": "Bergen", "reason": "missing"}]


def test_delta_check_service_is_read_only(service, fake_client):
    result = service.delta_check()

    assert result["isFirstImport"] is True
    assert result["summary"]["new"] == len(fake_client.zones)
    assert SnapshotStore().count() == 0
