from __future__ import annotations

import json

import pytest

from zone_admin.models import Area, OperationLogEntry, StagingArea, StagingCity, db
from zone_admin.navio.errors import NetworkTransient
from zone_admin.navio.pipeline.batch_cache import BatchCache


@pytest.fixture
def cli(navio_app):
    runner = navio_app.test_cli_runner()

    def _invoke(*args, **kwargs):
        return runner.invoke(args=["navio", *args], **kwargs)

    return _invoke


@pytest.fixture
def cache(navio_app) -> BatchCache:
    return BatchCache.for_app(navio_app)


def test_group_reports_cached_batch(cli, cache):
    result = cli()
    assert result.exit_code == 0
    assert "No batch in progress." in result.output

    cli("import")
    result = cli()
    assert f"Batch in progress: {cache.load().batch_id} (stage: staged" in result.output
    assert "  - Oslo" in result.output


def test_delta_check_prints_summary(cli):
    result = cli("delta-check")

    assert result.exit_code == 0, result.output
    assert "Delta: new=5 removed=0 changed=0 (geofence=0) unchanged=0" in result.output
    assert "first import" in result.output
    assert "Affected cities: Bergen, Oslo, Trondheim" in result.output


def test_import_stages_and_caches_the_batch(cli, cache):
    result = cli("import", "--summary-json")

    assert result.exit_code == 0, result.output
    assert "  Oslo: 3/3 zones, 1 districts, 0 need mapping" in result.output
    assert "Staged 3 cities, 3 districts, 5 areas (0 need mapping)." in result.output
    cached = cache.load()
    assert cached.stage == "staged"
    assert cached.cities == ["Bergen", "Oslo", "Trondheim"]
    summary = json.loads(result.output[result.output.index("{") :])
    assert summary["batchId"] == cached.batch_id


def test_import_refuses_to_guess_about_a_cached_batch(cli, cache):
    cli("import")
    batch_id = cache.load().batch_id

    refused = cli("import")
    assert refused.exit_code != 0
    assert "--resume" in refused.output and "--fresh" in refused.output

    resumed = cli("import", "--resume")
    assert resumed.exit_code == 0, resumed.output
    assert cache.load().batch_id == batch_id

    fresh = cli("import", "--fresh")
    assert fresh.exit_code == 0, fresh.output
    assert f"Discarded batch {batch_id} (5 staged areas removed)." in fresh.output
    assert cache.load().batch_id != batch_id


def test_resume_without_cache_fails(cli):
    result = cli("import", "--resume")
    assert result.exit_code != 0
    assert "no cached batch" in result.output


def test_paused_import_keeps_cache_for_resume(cli, cache, fake_client):
    # every fetch attempt fails
    fake_client.failures = [NetworkTransient("down")] * 3

    result = cli("import")

    assert result.exit_code != 0
    assert "NetworkTransient" in result.output
    assert cache.load() is not None

    retried = cli("import", "--resume")
    assert retried.exit_code == 0, retried.output


def test_approve_and_commit_clear_the_cache(cli, cache):
    cli("import")

    approved = cli("approve")
    assert approved.exit_code == 0, approved.output
    assert "Approved 3 cities." in approved.output

    committed = cli("commit")
    assert committed.exit_code == 0, committed.output
    assert "  committed Oslo (1 remaining)" in committed.output
    assert "Commit completed: 3 cities committed." in committed.output
    assert cache.load() is None
    assert Area.query.count() == 5

    synced = cli("sync-geo")
    assert synced.exit_code == 0, synced.output
    assert "Geo sync complete: 0 areas updated." in synced.output


def test_commit_failure_reports_progress_and_keeps_cache(cli, cache):
    cli("import")
    cli("approve")
    area = StagingArea.query.filter_by(navio_service_area_id="3").one()
    area.staging_district_id = 9999
    db.session.commit()

    result = cli("commit")

    assert result.exit_code != 0
    assert "DataIntegrityError" in result.output
    assert "Completed: 1, remaining: 2." in result.output
    assert cache.load() is not None


def test_corrupt_cache_must_be_discarded_with_fresh(cli, cache):
    cache.path.write_text("{not json", encoding="utf-8")

    refused = cli("import")
    assert refused.exit_code != 0
    assert "unreadable" in refused.output and "--fresh" in refused.output

    shown = cli()
    assert shown.exit_code != 0
    assert "unreadable" in shown.output

    fresh = cli("import", "--fresh")
    assert fresh.exit_code == 0, fresh.output
    assert "Discarded unreadable batch cache." in fresh.output
    assert cache.load().stage == "staged"


def test_commit_without_batch_fails(cli):
    result = cli("commit")
    assert result.exit_code != 0
    assert "No --batch-id given" in result.output


def test_reject_and_status(cli, cache):
    cli("import")
    bergen = StagingCity.query.filter_by(name="Bergen").one().id

    rejected = cli("reject", "--city-id", str(bergen))
    assert "Rejected 1 cities." in rejected.output

    status = cli("status")
    assert status.exit_code == 0, status.output
    payload = json.loads(status.output)
    assert payload["batchId"] == cache.load().batch_id
    assert payload["staging"]["cities"] == 2


def test_resolve_reports_validation_errors(cli):
    result = cli("resolve", "--area-id", "999", "--district", "Frogner")
    assert result.exit_code != 0
    assert "ValidationError" in result.output


def test_coverage_check_and_orphans(cli, production_area_factory):
    area = production_area_factory("Nedlagt", navio_id="77")

    coverage = cli("coverage-check")
    assert coverage.exit_code == 0, coverage.output
    assert "Health: " in coverage.output
    assert "production areas orphaned: 1/1" in coverage.output

    declined = cli("deactivate-orphans", input="n\n")
    assert declined.exit_code != 0
    assert db.session.get(Area, area.id).is_delivery is True

    confirmed = cli("deactivate-orphans", "--yes")
    assert confirmed.exit_code == 0, confirmed.output
    assert "Deactivated 1 areas." in confirmed.output
    db.session.expire_all()
    assert db.session.get(Area, area.id).is_delivery is False


def test_operations_lists_history(cli):
    cli("delta-check")
    result = cli("operations", "--type", "delta_check")

    assert result.exit_code == 0, result.output
    assert "delta_check" in result.output
    assert "success" in result.output
    assert OperationLogEntry.query.count() == 1


def test_disabled_pipeline_refuses_commands(cli, navio_app):
    navio_app.config["NAVIO_ENABLED"] = False

    result = cli("delta-check")

    assert result.exit_code != 0
    assert "disabled" in result.output
