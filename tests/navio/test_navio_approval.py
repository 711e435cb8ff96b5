from __future__ import annotations

import pytest
from navio_fakes import FakeClassifier

from zone_admin.models import db
from zone_admin.models.navio import StagingArea, StagingCity, StagingDistrict, StagingStatus
from zone_admin.navio import NAVIO_EXTENSION_KEY
from zone_admin.navio.errors import ValidationError
from zone_admin.navio.pipeline.approval import StagingSubtree, plan_approval, plan_rejection
from zone_admin.utils.navio import get_pipeline_service


def city_id(name: str) -> int:
    return StagingCity.query.filter_by(name=name).one().id


def statuses(model, **filters) -> set[StagingStatus]:
    return {row.status for row in model.query.filter_by(**filters).all()}


def test_approve_cascades_to_districts_and_areas(service, staged_batch):
    staged_batch()
    oslo = city_id("Oslo")

    result = service.approve([oslo])

    assert result == {"cities": 1, "writes": {"area_set_status": 3, "city_set_status": 1, "district_set_status": 1}}
    assert statuses(StagingCity, id=oslo) == {StagingStatus.APPROVED}
    assert statuses(StagingDistrict, staging_city_id=oslo) == {StagingStatus.APPROVED}
    assert StagingArea.query.filter_by(status=StagingStatus.APPROVED).count() == 3
    assert statuses(StagingCity, name="Bergen") == {StagingStatus.PENDING}


def test_approving_twice_is_a_no_op(service, staged_batch):
    staged_batch()
    oslo = city_id("Oslo")
    service.approve([oslo])

    again = service.approve([oslo])

    assert again == {"cities": 1, "writes": {}}


def test_approve_by_batch_takes_every_pending_city(service, staged_batch):
    batch_id = staged_batch()

    result = service.approve(batch_id=batch_id)

    assert result["cities"] == 3
    assert statuses(StagingArea, batch_id=batch_id) == {StagingStatus.APPROVED}


def test_areas_needing_mapping_block_approval(navio_app):
    navio_app.extensions[NAVIO_EXTENSION_KEY]["classifier"] = FakeClassifier({"Frogner": ("Oslo", None, "Frogner")})
    service = get_pipeline_service(navio_app)
    service.run_import("batch-1")
    oslo = city_id("Oslo")

    with pytest.raises(ValidationError, match="need mapping"):
        service.approve([oslo])
    assert statuses(StagingCity, id=oslo) == {StagingStatus.PENDING}

    area = StagingArea.query.filter_by(status=StagingStatus.NEEDS_MAPPING).one()
    service.resolve_mapping(area.id, district_name="Frogner")
    assert service.approve([oslo])["cities"] == 1


def test_reject_deletes_subtree_children_first(service, staged_batch):
    staged_batch()
    bergen = city_id("Bergen")
    subtree = StagingSubtree.load(db.session, [bergen])

    plan = plan_rejection(subtree)
    assert [op.level for op in plan.ops] == ["area", "district", "city"]

    result = service.reject([bergen])

    assert result == {"cities": 1, "writes": {"area_delete": 1, "city_delete": 1, "district_delete": 1}}
    assert StagingCity.query.filter_by(name="Bergen").count() == 0
    assert StagingArea.query.filter_by(navio_service_area_id="10").count() == 0
    assert StagingArea.query.count() == 4


def test_reject_is_idempotent(service, staged_batch):
    staged_batch()
    bergen = city_id("Bergen")
    service.reject([bergen])

    assert service.reject([bergen]) == {"cities": 0, "writes": {}}


def test_approval_plan_orders_parents_before_children(service, staged_batch):
    staged_batch()
    subtree = StagingSubtree.load(db.session, [city_id("Oslo")])

    plan = plan_approval(subtree)

    assert [op.level for op in plan.ops] == ["city", "district", "area", "area", "area"]
    assert {op.status for op in plan.ops} == {StagingStatus.APPROVED}


def test_committed_city_cannot_be_rejected(service, staged_batch):
    batch_id = staged_batch()
    oslo = city_id("Oslo")
    service.approve([oslo])
    service.run_commit(batch_id)

    with pytest.raises(ValidationError, match="Committed"):
        service.reject([oslo])
    # approving a committed city again changes nothing
    assert service.approve([oslo])["writes"] == {}


def test_city_ids_must_be_integers(service):
    with pytest.raises(ValidationError):
        service.approve(["oslo"])
