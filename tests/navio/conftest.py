from __future__ import annotations

import pytest
from navio_fakes import BERGEN_ZONES, OSLO_ZONES, TRONDHEIM_ZONES, FakeClassifier, FakeProviderClient

from zone_admin.models import Area, City, District, db
from zone_admin.navio import NAVIO_EXTENSION_KEY
from zone_admin.navio.geofence import GeoJsonGeofence
from zone_admin.utils.navio import get_pipeline_service


@pytest.fixture
def fake_client() -> FakeProviderClient:
    return FakeProviderClient(OSLO_ZONES + BERGEN_ZONES + TRONDHEIM_ZONES)


@pytest.fixture
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def navio_app(app, fake_client, fake_classifier, sleeps):
    state = app.extensions[NAVIO_EXTENSION_KEY]
    state.update({"client": fake_client, "classifier": fake_classifier, "sleep": sleeps.append})
    yield app


@pytest.fixture
def service(navio_app):
    return get_pipeline_service(navio_app)


@pytest.fixture
def staged_batch(service):
    """Run a full import and return its batch id."""

    def _stage(batch_id: str = "batch-1") -> str:
        service.run_import(batch_id)
        return batch_id

    return _stage


@pytest.fixture
def production_area_factory(app):
    def _factory(
        name: str,
        *,
        city: str = "Oslo",
        navio_id: str | None = None,
        geofence: GeoJsonGeofence | None = None,
        is_delivery: bool = True,
    ) -> Area:
        city_row = City.query.filter_by(name=city).one_or_none()
        if city_row is None:
            city_row = City(name=city, slug=city.lower(), navio_city_key=city.lower())
            db.session.add(city_row)
            db.session.flush()
        district = District.query.filter_by(city_id=city_row.id, name="Sentrum").one_or_none()
        if district is None:
            district = District(city_id=city_row.id, name="Sentrum", slug="sentrum")
            db.session.add(district)
            db.session.flush()
        area = Area(
            city_id=city_row.id,
            district_id=district.id,
            name=name,
            slug=name.lower().replace(" ", "-"),
            navio_service_area_id=navio_id,
            geofence_json=geofence.to_dict() if geofence else None,
            is_delivery=is_delivery,
        )
        db.session.add(area)
        db.session.commit()
        return area

    return _factory
