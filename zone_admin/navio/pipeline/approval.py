"""
Approval state machine for staged hierarchies.

States run ``pending -> approved -> committed``; ``pending|approved ->
rejected`` is terminal and realised as deletion. A transition is planned as a
pure function over an in-memory ``StagingSubtree`` and produces an ordered
``WriteSet`` (parent-before-child for approval, child-before-parent for
rejection) that is applied in a single transaction. Re-applying a plan to the
same ids is a no-op.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from zone_admin.models import db
from zone_admin.models.navio import StagingArea, StagingCity, StagingDistrict, StagingStatus

from ..errors import ValidationError

_MODELS = {"city": StagingCity, "district": StagingDistrict, "area": StagingArea}


@dataclass(frozen=True)
class WriteOp:
    level: str
    row_id: int
    action: str
    status: StagingStatus | None = None


@dataclass
class WriteSet:
    ops: list[WriteOp] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.ops)

    def summary(self) -> dict[str, int]:
        counts = Counter(f"{op.level}_{op.action}" for op in self.ops)
        return dict(sorted(counts.items()))


@dataclass
class StagingSubtree:
    """Rows of the requested cities and all of their descendants."""

    cities: list[StagingCity] = field(default_factory=list)
    districts: dict[int, list[StagingDistrict]] = field(default_factory=dict)
    areas: dict[int, list[StagingArea]] = field(default_factory=dict)

    @classmethod
    def load(cls, session: Session, city_ids: Iterable[int]) -> "StagingSubtree":
        ids = sorted({int(city_id) for city_id in city_ids})
        subtree = cls()
        if not ids:
            return subtree
        subtree.cities = session.query(StagingCity).filter(StagingCity.id.in_(ids)).order_by(StagingCity.id).all()
        found = [city.id for city in subtree.cities]
        if not found:
            return subtree
        districts = (
            session.query(StagingDistrict)
            .filter(StagingDistrict.staging_city_id.in_(found))
            .order_by(StagingDistrict.id)
            .all()
        )
        for district in districts:
            subtree.districts.setdefault(district.staging_city_id, []).append(district)
        district_ids = [district.id for district in districts]
        if district_ids:
            areas = (
                session.query(StagingArea)
                .filter(StagingArea.staging_district_id.in_(district_ids))
                .order_by(StagingArea.id)
                .all()
            )
            for area in areas:
                subtree.areas.setdefault(area.staging_district_id, []).append(area)
        return subtree

    def districts_of(self, city: StagingCity) -> list[StagingDistrict]:
        return self.districts.get(city.id, [])

    def areas_of(self, district: StagingDistrict) -> list[StagingArea]:
        return self.areas.get(district.id, [])


def plan_approval(subtree: StagingSubtree) -> WriteSet:
    blocked = [
        area.id
        for city in subtree.cities
        if city.status != StagingStatus.COMMITTED
        for district in subtree.districts_of(city)
        for area in subtree.areas_of(district)
        if area.status == StagingStatus.NEEDS_MAPPING
    ]
    if blocked:
        raise ValidationError(
            f"{len(blocked)} staged areas still need mapping; resolve them before approving (ids {blocked[:10]})."
        )

    write_set = WriteSet()
    for city in subtree.cities:
        if city.status == StagingStatus.COMMITTED:
            continue
        if city.status != StagingStatus.APPROVED:
            write_set.ops.append(WriteOp("city", city.id, "set_status", StagingStatus.APPROVED))
        for district in subtree.districts_of(city):
            if district.status not in (StagingStatus.APPROVED, StagingStatus.COMMITTED):
                write_set.ops.append(WriteOp("district", district.id, "set_status", StagingStatus.APPROVED))
            for area in subtree.areas_of(district):
                if area.status not in (StagingStatus.APPROVED, StagingStatus.COMMITTED):
                    write_set.ops.append(WriteOp("area", area.id, "set_status", StagingStatus.APPROVED))
    return write_set


def plan_rejection(subtree: StagingSubtree) -> WriteSet:
    committed = [city.name for city in subtree.cities if city.status == StagingStatus.COMMITTED]
    if committed:
        raise ValidationError(f"Committed cities cannot be rejected: {', '.join(committed)}.")

    area_ops: list[WriteOp] = []
    district_ops: list[WriteOp] = []
    city_ops: list[WriteOp] = []
    for city in subtree.cities:
        for district in subtree.districts_of(city):
            area_ops.extend(WriteOp("area", area.id, "delete") for area in subtree.areas_of(district))
            district_ops.append(WriteOp("district", district.id, "delete"))
        city_ops.append(WriteOp("city", city.id, "delete"))
    return WriteSet(ops=area_ops + district_ops + city_ops)


def apply_write_set(session: Session, write_set: WriteSet) -> None:
    """Apply ``write_set`` in order inside one transaction."""

    try:
        for op in write_set.ops:
            model = _MODELS[op.level]
            if op.action == "delete":
                session.execute(delete(model).where(model.id == op.row_id))
            else:
                session.execute(update(model).where(model.id == op.row_id).values(status=op.status))
        session.commit()
    except Exception:
        session.rollback()
        raise
    # Bulk statements bypass the identity map.
    session.expire_all()


class ApprovalService:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def approve(self, city_ids: Iterable[int]) -> dict:
        subtree = StagingSubtree.load(self.session, city_ids)
        write_set = plan_approval(subtree)
        apply_write_set(self.session, write_set)
        current_app.logger.info(
            "Navio staging approved",
            extra={"navio_city_ids": [city.id for city in subtree.cities], "navio_writes": write_set.summary()},
        )
        return {"cities": len(subtree.cities), "writes": write_set.summary()}

    def reject(self, city_ids: Iterable[int]) -> dict:
        subtree = StagingSubtree.load(self.session, city_ids)
        names = [city.name for city in subtree.cities]
        write_set = plan_rejection(subtree)
        apply_write_set(self.session, write_set)
        current_app.logger.info(
            "Navio staging rejected",
            extra={"navio_cities": names, "navio_writes": write_set.summary()},
        )
        return {"cities": len(names), "writes": write_set.summary()}

    def city_ids_for_batch(self, batch_id: str, *, status: StagingStatus | None = None) -> list[int]:
        query = self.session.query(StagingCity.id).filter(StagingCity.batch_id == batch_id)
        if status is not None:
            query = query.filter(StagingCity.status == status)
        return [city_id for (city_id,) in query.order_by(StagingCity.id)]
