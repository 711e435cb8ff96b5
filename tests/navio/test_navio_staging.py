from __future__ import annotations

import pytest
from navio_fakes import OSLO_ZONES, FakeClassifier, make_zone

from zone_admin.models import db
from zone_admin.models.navio import (
    ImportQueueEntry,
    ImportQueueStatus,
    NavioBatchStatus,
    NavioImportBatch,
    StagingArea,
    StagingCity,
    StagingDistrict,
    StagingStatus,
)
from zone_admin.navio.errors import DataIntegrityError, NetworkTransient, PartialBatchFailure, ValidationError
from zone_admin.navio.pipeline.snapshot import SnapshotStore
from zone_admin.navio.pipeline.staging import UNMAPPED_DISTRICT, StagingBuilder


def staged_area(zone_id: int) -> StagingArea:
    return StagingArea.query.filter_by(navio_service_area_id=str(zone_id)).one()


def district_of(area: StagingArea) -> StagingDistrict:
    return db.session.get(StagingDistrict, area.staging_district_id)


def test_initialize_queues_active_cities_in_name_order(service, fake_client):
    fake_client.zones.append(make_zone(30, "Gamle Stavanger", city="Stavanger", active=False))

    result = service.initialize("b1")

    assert result["totalCities"] == 3
    assert [city["name"] for city in result["cities"]] == ["Bergen", "Oslo", "Trondheim"]
    assert result["cities"][1] == {"name": "Oslo", "zoneCount": 3, "status": "pending"}
    batch = db.session.get(NavioImportBatch, "b1")
    assert batch.status == NavioBatchStatus.PROCESSING
    # the batch keeps every zone, inactive included, for the snapshot
    assert len(batch.zones_json) == 6


def test_initialize_again_resumes_without_fetching(service, fake_client):
    service.initialize("b1")
    service.process_city("b1")

    again = service.initialize("b1")

    assert again["resumed"] is True
    assert fake_client.calls == 1
    assert [city["status"] for city in again["cities"]] == ["completed", "pending", "pending"]


def test_process_city_works_in_chunks(app, fake_classifier):
    builder = StagingBuilder(classifier=fake_classifier, chunk_size=2)
    builder.initialize("b1", lambda: OSLO_ZONES)

    first = builder.process_city("b1")
    assert first.processed_city == "Oslo"
    assert (first.zones_processed, first.zones_total) == (2, 3)
    assert first.needs_more_processing is True
    assert first.completed is False

    second = builder.process_city("b1")
    assert second.zones_processed == 3
    assert second.completed is True
    assert second.districts_discovered == 1
    assert second.neighborhoods_discovered == 3

    entry = ImportQueueEntry.query.filter_by(batch_id="b1").one()
    assert entry.status == ImportQueueStatus.COMPLETED
    assert entry.discovered_hierarchy == {"Sentrum": ["Frogner", "Grünerløkka", "Oslo Sentrum"]}
    assert [call[1] for call in fake_classifier.calls] == ["Oslo", "Oslo"]

    assert builder.process_city("b1").completed is True


def test_failed_chunk_keeps_progress_and_records_error(app):
    class Flaky(FakeClassifier):
        def classify(self, zones, *, city_hint=None):
            if len(self.calls) == 1:
                self.calls.append(([], city_hint))
                raise NetworkTransient("gateway reset")
            return super().classify(zones, city_hint=city_hint)

    builder = StagingBuilder(classifier=Flaky(), chunk_size=2)
    builder.initialize("b1", lambda: OSLO_ZONES)
    builder.process_city("b1")

    with pytest.raises(NetworkTransient):
        builder.process_city("b1")

    entry = ImportQueueEntry.query.filter_by(batch_id="b1").one()
    assert entry.status == ImportQueueStatus.PROCESSING
    assert entry.zones_processed == 2
    assert entry.error_message == "gateway reset"

    assert builder.process_city("b1").completed is True
    assert StagingArea.query.count() == 3


def test_zones_without_city_hint_are_grouped_by_classifier_or_unknown(app):
    classifier = FakeClassifier({"Majorstuen": ("Oslo", "Frogner", "Majorstuen")})
    zones = [make_zone(1, "Majorstuen", city=None), make_zone(2, "Q-17", city=None)]
    builder = StagingBuilder(classifier=classifier)

    result = builder.initialize("b1", lambda: zones)
    assert [city["name"] for city in result.cities] == ["Oslo", "Unknown"]

    builder.process_city("b1")
    builder.process_city("b1")

    unknown = staged_area(2)
    assert unknown.status == StagingStatus.NEEDS_MAPPING
    assert unknown.mapping_reason == "unknown_city"
    assert district_of(unknown).name == UNMAPPED_DISTRICT
    assert staged_area(1).status == StagingStatus.PENDING


def test_classifier_placing_zone_in_another_city_needs_mapping(app):
    classifier = FakeClassifier({"Frogner": ("Bærum", "Sandvika", "Frogner")})
    builder = StagingBuilder(classifier=classifier)
    builder.initialize("b1", lambda: OSLO_ZONES)
    builder.process_city("b1")

    area = staged_area(3)
    assert area.status == StagingStatus.NEEDS_MAPPING
    assert area.mapping_reason == "city_mismatch"
    assert staged_area(1).mapping_reason is None


def test_finalize_refuses_partial_batch_then_replaces_snapshot(service):
    service.initialize("b1")
    service.process_city("b1")

    with pytest.raises(PartialBatchFailure) as excinfo:
        service.finalize("b1")
    assert (excinfo.value.completed, excinfo.value.remaining) == (1, 2)
    assert SnapshotStore().count() == 0

    service.process_city("b1")
    service.process_city("b1")
    result = service.finalize("b1")

    assert result["staged"] == {"cities": 3, "districts": 3, "areas": 5, "needsMapping": 0}
    assert result["snapshotRows"] == 5
    assert db.session.get(NavioImportBatch, "b1").status == NavioBatchStatus.STAGED
    assert SnapshotStore().load()[10].city_name == "Bergen"


def test_run_import_stages_everything(service, staged_batch, sleeps):
    batch_id = staged_batch()

    assert StagingCity.query.filter_by(batch_id=batch_id).count() == 3
    assert StagingArea.query.filter_by(batch_id=batch_id, status=StagingStatus.PENDING).count() == 5
    assert SnapshotStore().count() == 5
    assert sleeps == []

    delta = service.delta_check()
    assert delta["hasChanges"] is False


def test_resolve_mapping_moves_area_out_of_unmapped(app):
    classifier = FakeClassifier({"Frogner": ("Oslo", None, "Frogner")})
    builder = StagingBuilder(classifier=classifier)
    builder.initialize("b1", lambda: OSLO_ZONES)
    builder.process_city("b1")

    area = staged_area(3)
    assert area.mapping_reason == "incomplete_classification"
    unmapped_id = area.staging_district_id
    assert district_of(area).name == UNMAPPED_DISTRICT

    resolved = builder.resolve_mapping(area.id, district_name="Frogner", area_name="Frogner Vest")

    assert resolved.status == StagingStatus.PENDING
    assert resolved.name == "Frogner Vest"
    assert resolved.mapping_reason is None
    target = district_of(resolved)
    assert (target.name, target.source) == ("Frogner", "manual")
    assert db.session.get(StagingDistrict, unmapped_id) is None


def test_resolve_mapping_rejects_bad_requests(app):
    builder = StagingBuilder(classifier=FakeClassifier())
    builder.initialize("b1", lambda: [make_zone(1, "Q-17", city=None)])
    builder.process_city("b1")
    area = staged_area(1)

    with pytest.raises(ValidationError):
        builder.resolve_mapping(area.id, district_name="  ")
    with pytest.raises(ValidationError):
        builder.resolve_mapping(area.id, district_name=UNMAPPED_DISTRICT)
    with pytest.raises(ValidationError):
        builder.resolve_mapping(area.id, district_name="Sentrum")
    with pytest.raises(ValidationError):
        builder.resolve_mapping(9999, district_name="Sentrum")


def test_clear_batch_removes_all_batch_rows(service, staged_batch):
    batch_id = staged_batch()

    counts = service.clear_batch(batch_id)

    assert counts == {"areas": 5, "districts": 3, "cities": 3, "queueEntries": 3}
    assert db.session.get(NavioImportBatch, batch_id) is None
    assert StagingArea.query.count() == 0


def test_unknown_batch_and_corrupt_queue(app, fake_classifier):
    builder = StagingBuilder(classifier=fake_classifier)
    with pytest.raises(ValidationError):
        builder.process_city("missing")
    with pytest.raises(ValidationError):
        builder.finalize("missing")

    builder.initialize("b1", lambda: OSLO_ZONES + [make_zone(10, "Bryggen", city="Bergen")])
    for entry in ImportQueueEntry.query.all():
        entry.status = ImportQueueStatus.PROCESSING
    db.session.commit()

    with pytest.raises(DataIntegrityError):
        builder.process_city("b1")
