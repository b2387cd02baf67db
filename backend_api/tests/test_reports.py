"""
Report compilation, report immutability and the artifact write-back.
"""

from pathlib import Path

import pytest

from src.reporting.engine.artifacts import LocalArtifactStore
from src.reporting.engine.errors import ForbiddenError, ImmutableRecordError, NoMetricsError, NotFoundError
from src.reporting.engine.service import ReportingEngine
from src.reporting.models.enums import AuditAction, ReportStatus
from src.reporting.models.orm_models import MetricObservation, MetricType, Report


@pytest.fixture
def measured_event(reporting_engine, catalog, venue, event, venue_admin, make_goal):
    make_goal(venue, catalog["electricity_consumption"], 1500)
    make_goal(venue, catalog["waste_generated"], 600)
    reporting_engine.ingest_metric(event.id, "electricity_consumption", 1800, "Total electricity for summit", venue_admin.id)
    reporting_engine.ingest_metric(event.id, "waste_generated", 500, None, venue_admin.id)
    reporting_engine.ingest_metric(event.id, "water_usage", 20000, None, venue_admin.id)
    return event


def test_generate_compiles_complete_report(reporting_engine, db, measured_event, venue_admin, audit_entries):
    report_id = reporting_engine.generate_report(measured_event.id, venue_admin.id)

    report = db.get(Report, report_id)
    assert report.status == ReportStatus.COMPLETE.value
    assert report.event_id == measured_event.id
    assert report.generated_by == venue_admin.id
    assert report.report_url is None

    summary = report.summary
    assert summary["event"]["id"] == measured_event.id
    assert summary["totals"] == {"on_target": 1, "off_target": 1, "without_goal": 1}
    by_code = {metric["code"]: metric for metric in summary["metrics"]}
    assert by_code["electricity_consumption"]["value"] == 1800
    assert by_code["electricity_consumption"]["goal"] == {"target_value": 1500, "variance": 300, "status": "off_target"}
    assert by_code["waste_generated"]["goal"]["status"] == "on_target"
    assert by_code["water_usage"]["goal"] is None

    entries = audit_entries(AuditAction.REPORT_GENERATE.value)
    assert len(entries) == 1
    assert entries[0].target_id == report_id
    assert entries[0].details["status"] == "complete"


def test_regeneration_creates_new_rows(reporting_engine, db, measured_event, venue_admin):
    first = reporting_engine.generate_report(measured_event.id, venue_admin.id)
    second = reporting_engine.generate_report(measured_event.id, venue_admin.id)

    assert first != second
    reports = db.query(Report).filter(Report.event_id == measured_event.id).order_by(Report.id).all()
    assert [r.id for r in reports] == [first, second]
    assert all(r.status == ReportStatus.COMPLETE.value for r in reports)


def test_staff_can_generate_reports(reporting_engine, measured_event, staff):
    assert reporting_engine.generate_report(measured_event.id, staff.id)


def test_event_without_metrics(reporting_engine, db, catalog, event, venue_admin, audit_entries):
    with pytest.raises(NoMetricsError):
        reporting_engine.generate_report(event.id, venue_admin.id)
    assert db.query(Report).count() == 0
    assert audit_entries() == []


def test_unknown_event(reporting_engine, catalog, venue_admin):
    with pytest.raises(NotFoundError):
        reporting_engine.generate_report(31337, venue_admin.id)


def test_non_member_is_forbidden(reporting_engine, db, measured_event, make_user, audit_entries):
    outsider = make_user()
    with pytest.raises(ForbiddenError):
        reporting_engine.generate_report(measured_event.id, outsider.id)
    assert db.query(Report).count() == 0
    denials = audit_entries(AuditAction.ACCESS_DENIED.value)
    assert len(denials) == 1
    assert denials[0].details == {"venue_id": measured_event.venue_id, "capability": "write"}


def test_empty_active_catalog_produces_error_report(reporting_engine, db, measured_event, venue_admin):
    db.query(MetricType).update({MetricType.is_active: False})
    db.commit()

    report_id = reporting_engine.generate_report(measured_event.id, venue_admin.id)

    report = db.get(Report, report_id)
    assert report.status == ReportStatus.ERROR.value
    assert "error" in report.summary


def test_deactivation_leaves_history_intact(reporting_engine, db, measured_event, venue_admin, super_admin):
    report_id = reporting_engine.generate_report(measured_event.id, venue_admin.id)
    db.expire_all()
    before_summary = db.get(Report, report_id).summary
    before_values = {(o.metric_type_id, o.value) for o in db.query(MetricObservation).all()}

    reporting_engine.deactivate_metric_type("electricity_consumption", super_admin.id)

    db.expire_all()
    assert db.get(Report, report_id).summary == before_summary
    assert {(o.metric_type_id, o.value) for o in db.query(MetricObservation).all()} == before_values
    later = db.get(Report, reporting_engine.generate_report(measured_event.id, venue_admin.id))
    electricity = [m for m in later.summary["metrics"] if m["code"] == "electricity_consumption"]
    assert electricity[0]["active"] is False


def test_finalized_report_cannot_be_modified(reporting_engine, db, measured_event, venue_admin):
    report = db.get(Report, reporting_engine.generate_report(measured_event.id, venue_admin.id))

    report.summary = {"tampered": True}
    with pytest.raises(ImmutableRecordError):
        db.flush()
    db.rollback()

    report = db.get(Report, report.id)
    report.status = ReportStatus.ERROR.value
    with pytest.raises(ImmutableRecordError):
        db.flush()


def test_artifact_is_attached_after_commit(db, measured_event, venue_admin, tmp_path, audit_entries):
    engine = ReportingEngine(artifact_store=LocalArtifactStore(tmp_path))

    report_id = engine.generate_report(measured_event.id, venue_admin.id)

    report = db.get(Report, report_id)
    assert report.status == ReportStatus.COMPLETE.value
    assert report.report_url.startswith("file://")
    assert (tmp_path / f"report-{report_id}.json").exists()
    assert len(audit_entries(AuditAction.REPORT_ATTACH_ARTIFACT.value)) == 1


def test_artifact_url_is_written_only_once(db, measured_event, venue_admin, tmp_path):
    engine = ReportingEngine(artifact_store=LocalArtifactStore(tmp_path))
    report = db.get(Report, engine.generate_report(measured_event.id, venue_admin.id))

    report.report_url = "s3://elsewhere/report.pdf"
    with pytest.raises(ImmutableRecordError):
        db.flush()


class _BrokenStore:
    def store(self, report_id, summary):
        raise OSError("bucket unavailable")


def test_artifact_failure_keeps_report_complete(db, measured_event, venue_admin, audit_entries):
    engine = ReportingEngine(artifact_store=_BrokenStore())

    report_id = engine.generate_report(measured_event.id, venue_admin.id)

    report = db.get(Report, report_id)
    assert report.status == ReportStatus.COMPLETE.value
    assert report.report_url is None
    assert audit_entries(AuditAction.REPORT_ATTACH_ARTIFACT.value) == []


def test_local_artifact_store_writes_json(tmp_path):
    url = LocalArtifactStore(tmp_path / "artifacts").store(7, {"totals": {"on_target": 1}})
    path = tmp_path / "artifacts" / "report-7.json"
    assert url == path.resolve().as_uri()
    assert '"on_target": 1' in Path(path).read_text(encoding="utf-8")
