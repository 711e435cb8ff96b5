from __future__ import annotations

from types import SimpleNamespace

from navio_fakes import square

from zone_admin.models import Area, City, StagingArea, db
from zone_admin.navio import NAVIO_EXTENSION_KEY
from zone_admin.navio.errors import NetworkTransient, UpstreamRateLimited


def pipeline(client, mode, **payload):
    return client.post("/navio/pipeline", json={"mode": mode, **payload}, headers={"X-User-Id": "ops@example.com"})


def test_health_lists_modes(navio_app, client):
    response = client.get("/navio/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["enabled"] is True
    assert body["worker_enabled"] is False
    assert "process_city" in body["modes"]


def test_pipeline_requires_a_known_mode(navio_app, client):
    missing = client.post("/navio/pipeline", json={})
    assert missing.status_code == 400
    assert "delta_check" in missing.get_json()["modes"]

    unknown = pipeline(client, "explode")
    assert unknown.status_code == 400
    assert "Unknown mode" in unknown.get_json()["error"]

    no_batch = pipeline(client, "process_city")
    assert no_batch.status_code == 400


def test_full_flow_one_unit_per_request(navio_app, client):
    delta = pipeline(client, "delta_check")
    assert delta.status_code == 200
    assert delta.get_json()["isFirstImport"] is True

    init = pipeline(client, "initialize", batch_id="web-1").get_json()
    assert init["totalCities"] == 3

    steps = [pipeline(client, "process_city", batch_id="web-1").get_json() for _ in range(3)]
    assert [step["processedCity"] for step in steps] == ["Bergen", "Oslo", "Trondheim"]
    assert steps[-1]["completed"] is True

    finalized = pipeline(client, "finalize", batch_id="web-1")
    assert finalized.status_code == 200
    assert finalized.get_json()["staged"]["areas"] == 5

    approved = client.post("/navio/staging/approve", json={"batch_id": "web-1"})
    assert approved.get_json()["cities"] == 3

    commits = [pipeline(client, "commit_city", batch_id="web-1").get_json() for _ in range(3)]
    assert commits[-1]["completed"] is True
    assert Area.query.count() == 5

    synced = pipeline(client, "sync_geo").get_json()
    assert synced["syncedCity"] == "Bergen"
    assert synced["nextCursor"] == City.query.filter_by(name="Bergen").one().id

    coverage = pipeline(client, "coverage_check").get_json()
    assert coverage["alignment"]["navioAreasUncovered"] == 0
    assert coverage["healthStatus"] == "healthy"

    status = client.get("/navio/batches/web-1").get_json()
    assert status["status"] == "committed"
    assert status["queue"] == {"completed": 3, "remaining": 0}


def test_partial_batch_is_a_conflict_with_counts(navio_app, client):
    pipeline(client, "initialize", batch_id="web-1")
    pipeline(client, "process_city", batch_id="web-1")

    response = pipeline(client, "finalize", batch_id="web-1")

    assert response.status_code == 409
    body = response.get_json()
    assert body["status"] == "paused"
    assert (body["completed"], body["remaining"]) == (1, 2)


def test_commit_integrity_error_reports_progress(navio_app, client, service, staged_batch):
    batch_id = staged_batch("web-2")
    service.approve(batch_id=batch_id)
    area = StagingArea.query.filter_by(navio_service_area_id="3").one()
    area.staging_district_id = 9999
    db.session.commit()

    response = pipeline(client, "commit", batch_id=batch_id)

    assert response.status_code == 409
    body = response.get_json()
    assert body["kind"] == "data_integrity"
    assert (body["completed"], body["remaining"]) == (1, 2)


def test_rate_limit_maps_to_429_with_retry_after(navio_app, client, fake_client, sleeps):
    fake_client.failures = [UpstreamRateLimited("slow down", retry_after=12)] * 3

    response = pipeline(client, "delta_check")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "12"
    assert sleeps == [12, 12]


def test_network_failure_maps_to_503(navio_app, client, fake_client):
    fake_client.failures = [NetworkTransient("down")] * 3

    response = pipeline(client, "coverage_check")

    assert response.status_code == 503


def test_deactivate_orphans_needs_confirmation(navio_app, client, production_area_factory):
    production_area_factory("Nedlagt", navio_id="77")

    refused = pipeline(client, "deactivate_orphans")
    assert refused.status_code == 400

    done = pipeline(client, "deactivate_orphans", confirm=True)
    assert done.get_json()["deactivated"] == 1


def test_staging_resolve_validates_area_id(navio_app, client):
    response = client.post("/navio/staging/resolve", json={"area_id": "abc", "district_name": "Frogner"})
    assert response.status_code == 400

    response = client.post("/navio/staging/resolve", json={"area_id": 42, "district_name": "Frogner"})
    assert response.status_code == 400
    assert "not found" in response.get_json()["error"]


def test_operations_history(navio_app, client):
    pipeline(client, "delta_check")
    pipeline(client, "coverage_check")

    body = client.get("/navio/operations?type=delta_check").get_json()
    assert [op["operation_type"] for op in body["operations"]] == ["delta_check"]
    assert body["operations"][0]["user_id"] == "ops@example.com"
    assert body["operations"][0]["status"] == "success"

    assert client.get("/navio/operations?type=nope").status_code == 400
    assert client.get("/navio/operations?limit=x").status_code == 400
    assert len(client.get("/navio/operations?limit=1").get_json()["operations"]) == 1


def test_delivery_check(navio_app, client, production_area_factory):
    production_area_factory("Grünerløkka", navio_id="2", geofence=square(10.0, 59.9))

    inside = client.get("/navio/delivery-check?lat=59.905&lng=10.005").get_json()
    assert inside["delivers"] is True
    assert inside["area"]["name"] == "Grünerløkka"
    assert inside["navioServiceAreaId"] == "2"

    outside = client.get("/navio/delivery-check?lat=60.5&lng=10.005").get_json()
    assert outside == {"delivers": False, "area": None, "navioServiceAreaId": None}

    assert client.get("/navio/delivery-check?lat=59.9").status_code == 400


def test_unknown_batch_status_is_bad_request(navio_app, client):
    assert client.get("/navio/batches/missing").status_code == 400


def test_jobs_need_the_worker(navio_app, client, monkeypatch):
    assert client.post("/navio/jobs/import", json={"batch_id": "b1"}).status_code == 503
    assert client.post("/navio/jobs/rebuild").status_code == 404

    enqueued = {}

    class FakeTask:
        def apply_async(self, kwargs=None):
            enqueued.update(kwargs or {})
            return SimpleNamespace(id="task-123")

    state = navio_app.extensions[NAVIO_EXTENSION_KEY]
    monkeypatch.setitem(state, "worker_enabled", True)
    monkeypatch.setitem(state, "celery_app", SimpleNamespace(tasks={"navio.pipeline.run_import": FakeTask()}))

    assert client.post("/navio/jobs/import", json={}).status_code == 400

    response = client.post("/navio/jobs/import", json={"batch_id": "b1", "only_affected": True})
    assert response.status_code == 202
    assert response.get_json() == {"job": "import", "task_id": "task-123", "queue": "navio"}
    assert enqueued == {"user_id": None, "batch_id": "b1", "only_affected": True}


def test_disabled_pipeline_returns_404(navio_app, client):
    navio_app.config["NAVIO_ENABLED"] = False

    assert pipeline(client, "delta_check").status_code == 404
    assert client.get("/navio/operations").status_code == 404


def test_app_health_and_json_404(client):
    assert client.get("/health").get_json()["status"] == "ok"
    missing = client.get("/does-not-exist")
    assert missing.status_code == 404
    assert missing.is_json
