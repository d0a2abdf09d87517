"""
End-to-end runs of the staged import pipeline on an in-memory database.
"""
from datetime import date

from app.db.models import Dataset, DatasetSchema, Event, ImportFile, ImportJob, UserUsage
from app.domain.imports.orchestrator import approve_import_job, reject_import_job
from app.domain.imports.stage_handlers import handle_create_events
from app.domain.imports.stages import ProcessingStage

CONCERTS = [
    {"title": "Jazz Night", "date": "2024-01-15", "lat": 40.7128, "lng": -74.006},
    {"title": "Jazz Night", "date": "2024-01-15", "lat": 40.7128, "lng": -74.006},
]


def _jobs(session, file_id):
    return (
        session.query(ImportJob)
        .filter(ImportJob.import_file_id == file_id)
        .order_by(ImportJob.sheet_index)
        .all()
    )


def _events(session, dataset_id):
    return (
        session.query(Event)
        .filter(Event.dataset_id == dataset_id)
        .order_by(Event.unique_id, Event.version)
        .all()
    )


def _single_dataset(dataset_id):
    return {"dataset_mapping": {"mapping_type": "single", "dataset_id": dataset_id}}


def test_internal_duplicate_is_skipped(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    file_id = run_import(write_csv("concerts.csv", CONCERTS), **_single_dataset(dataset_id))

    with session_factory() as session:
        import_file = session.get(ImportFile, file_id)
        [job] = _jobs(session, file_id)

        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.duplicates["summary"] == {
            "total_rows": 2,
            "unique_rows": 1,
            "internal_duplicates": 1,
            "external_duplicates": 0,
        }
        assert job.results["events_created"] == 1
        assert job.results["duplicates_skipped"] == 1
        assert job.progress["overall_percentage"] == 100
        assert import_file.status == "completed"
        assert import_file.jobs_completed == 1

        [event] = _events(session, dataset_id)
        assert event.unique_id.startswith("auto:")
        assert event.latitude == 40.7128
        assert event.longitude == -74.006
        assert event.coordinate_source["type"] == "import"
        assert event.event_timestamp.date() == date(2024, 1, 15)
        assert event.schema_version_number == 1


def test_field_mappings_detected_from_column_names(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    file_id = run_import(write_csv("concerts.csv", CONCERTS), **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.field_mappings["title_path"] == "title"
        assert job.field_mappings["timestamp_path"] == "date"
        assert job.field_mappings["latitude_path"] == "lat"
        assert job.field_mappings["longitude_path"] == "lng"
        assert job.field_mappings["location_path"] is None


def test_first_import_publishes_schema_version(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    run_import(write_csv("concerts.csv", CONCERTS), **_single_dataset(dataset_id))

    with session_factory() as session:
        [version] = session.query(DatasetSchema).filter(DatasetSchema.dataset_id == dataset_id).all()
        assert version.version_number == 1
        assert version.auto_approved is True
        assert set(version.schema["properties"]) == {"title", "date", "lat", "lng"}
        assert version.field_metadata["title"]["occurrences"] == 1


def test_unchanged_schema_reuses_latest_version(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    run_import(write_csv("a.csv", [{"title": "Opening", "date": "2024-02-01"}]), **_single_dataset(dataset_id))
    file_id = run_import(write_csv("b.csv", [{"title": "Closing", "date": "2024-02-02"}]), **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.schema_version_number == 1
        assert job.progress["stages"]["create-schema-version"]["status"] == "skipped"
        assert session.query(DatasetSchema).filter(DatasetSchema.dataset_id == dataset_id).count() == 1


def test_default_dataset_waits_for_approval(session_factory, pipeline, write_csv, run_import):
    file_id = run_import(write_csv("festival.csv", CONCERTS[:1]))

    with session_factory() as session:
        import_file = session.get(ImportFile, file_id)
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.AWAIT_APPROVAL.value
        assert job.schema_validation["requires_approval"] is True
        assert import_file.status == "processing"
        assert job.dataset.name == "festival"
        assert session.query(Event).count() == 0
        job_id = job.id

    with session_factory() as session:
        approve_import_job(session, job_id, pipeline, approved_by_id=None, notes="looks right")
    pipeline.queue.run_until_empty()

    with session_factory() as session:
        job = session.get(ImportJob, job_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.schema_validation["approved"] is True
        assert job.results["events_created"] == 1
        version = session.query(DatasetSchema).filter(DatasetSchema.dataset_id == job.dataset_id).one()
        assert version.auto_approved is False
        assert session.get(ImportFile, file_id).status == "completed"


def test_locked_dataset_gates_new_field_until_approved(session_factory, pipeline, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    run_import(write_csv("first.csv", [{"title": "Opening", "date": "2024-02-01"}]), **_single_dataset(dataset_id))

    with session_factory() as session:
        dataset = session.get(Dataset, dataset_id)
        dataset.schema_config = {"locked": True, "auto_approve_non_breaking": True}
        session.commit()

    file_id = run_import(
        write_csv("second.csv", [{"title": "Closing", "date": "2024-02-02", "category": "party"}]),
        **_single_dataset(dataset_id),
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.AWAIT_APPROVAL.value
        assert "locked" in job.schema_validation["approval_reason"]
        assert [change["path"] for change in job.schema_validation["new_fields"]] == ["category"]
        assert session.query(Event).filter(Event.import_job_id == job.id).count() == 0
        job_id = job.id

    with session_factory() as session:
        approve_import_job(session, job_id, pipeline, approved_by_id=7)
    pipeline.queue.run_until_empty()

    with session_factory() as session:
        job = session.get(ImportJob, job_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.schema_version_number == 2
        version = session.query(DatasetSchema).filter(DatasetSchema.version_number == 2).one()
        assert version.approved_by_id == 7
        assert "category" in version.schema["properties"]


def test_locked_dataset_gates_unchanged_schema(session_factory, pipeline, make_dataset, write_csv, run_import):
    dataset_id = make_dataset(schema_config={"locked": True})
    first = run_import(write_csv("first.csv", [{"title": "Opening", "date": "2024-02-01"}]), **_single_dataset(dataset_id))
    with session_factory() as session:
        [job] = _jobs(session, first)
        approve_import_job(session, job.id, pipeline)
    pipeline.queue.run_until_empty()

    second = run_import(write_csv("second.csv", [{"title": "Closing", "date": "2024-02-02"}]), **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, second)
        assert job.stage == ProcessingStage.AWAIT_APPROVAL.value
        assert job.schema_validation["schema_unchanged"] is True
        assert job.schema_validation["requires_approval"] is True
        assert "locked" in job.schema_validation["approval_reason"]
        job_id = job.id

    with session_factory() as session:
        approve_import_job(session, job_id, pipeline)
    pipeline.queue.run_until_empty()

    with session_factory() as session:
        job = session.get(ImportJob, job_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.schema_version_number == 1
        assert job.progress["stages"]["create-schema-version"]["status"] == "skipped"
        assert session.query(DatasetSchema).filter(DatasetSchema.dataset_id == dataset_id).count() == 1


def test_rejected_job_fails_with_reason(session_factory, pipeline, write_csv, run_import):
    file_id = run_import(write_csv("festival.csv", CONCERTS[:1]))
    with session_factory() as session:
        [job] = _jobs(session, file_id)
        job_id = job.id

    with session_factory() as session:
        reject_import_job(session, job_id, pipeline, reason="wrong columns")

    with session_factory() as session:
        job = session.get(ImportJob, job_id)
        assert job.stage == ProcessingStage.FAILED.value
        assert job.error_message == "Schema changes rejected: wrong columns"
        assert session.get(ImportFile, file_id).status == "failed"


def test_strict_mode_fails_on_new_field(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    options = {**_single_dataset(dataset_id), "schema_mode": "strict"}
    first = run_import(write_csv("a.csv", [{"title": "Opening", "date": "2024-02-01"}]), **options)
    second = run_import(write_csv("b.csv", [{"title": "Closing", "date": "2024-02-02", "room": "A"}]), **options)

    with session_factory() as session:
        assert _jobs(session, first)[0].stage == ProcessingStage.COMPLETED.value
        [job] = _jobs(session, second)
        assert job.stage == ProcessingStage.FAILED.value
        assert "Strict schema mode" in job.error_message
        assert session.get(ImportFile, second).status == "failed"


def test_flexible_mode_accepts_new_field_and_rejects_removed_required(
    session_factory, make_dataset, write_csv, run_import
):
    dataset_id = make_dataset(schema_config={"processing_mode": "flexible"})
    options = _single_dataset(dataset_id)
    run_import(write_csv("a.csv", [{"title": "Opening", "date": "2024-02-01"}]), **options)
    grown = run_import(write_csv("b.csv", [{"title": "Closing", "date": "2024-02-02", "room": "A"}]), **options)
    shrunk = run_import(write_csv("c.csv", [{"date": "2024-02-03", "room": "B"}]), **options)

    with session_factory() as session:
        [grown_job] = _jobs(session, grown)
        assert grown_job.stage == ProcessingStage.COMPLETED.value
        assert grown_job.schema_version_number == 2

        [shrunk_job] = _jobs(session, shrunk)
        assert shrunk_job.stage == ProcessingStage.FAILED.value
        assert "title" in shrunk_job.error_message


def test_external_duplicate_skipped(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    options = _single_dataset(dataset_id)
    run_import(
        write_csv(
            "a.csv",
            [
                {"title": "Opening", "date": "2024-02-01", "lat": 40.7, "lng": -74.1},
                {"title": "Panel", "date": "2024-02-02", "lat": 40.8, "lng": -74.2},
            ],
        ),
        **options,
    )
    file_id = run_import(
        write_csv(
            "b.csv",
            [
                {"title": "Opening", "date": "2024-02-01", "lat": 40.7, "lng": -74.1},
                {"title": "Closing", "date": "2024-02-03", "lat": 41.5, "lng": -74.3},
            ],
        ),
        **options,
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.duplicates["summary"]["external_duplicates"] == 1
        assert job.duplicates["external"][0]["row_number"] == 0
        assert job.results["events_created"] == 1
        assert job.results["duplicates_skipped"] == 1
        assert len(_events(session, dataset_id)) == 3


def _external_id_dataset(make_dataset, strategy):
    return make_dataset(
        id_strategy={"type": "external", "external_id_path": "id"},
        deduplication_config={"enabled": True, "strategy": strategy},
    )


def test_update_strategy_overwrites_existing_event(session_factory, make_dataset, write_csv, run_import):
    dataset_id = _external_id_dataset(make_dataset, "update")
    options = _single_dataset(dataset_id)
    run_import(write_csv("a.csv", [{"id": 1, "title": "Old title", "date": "2024-03-01"}]), **options)
    file_id = run_import(
        write_csv(
            "b.csv",
            [
                {"id": 1, "title": "New title", "date": "2024-03-01"},
                {"id": 2, "title": "Another", "date": "2024-03-02"},
            ],
        ),
        **options,
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.results["events_created"] == 1
        assert job.results["events_updated"] == 1
        assert job.results["total_events"] == 2
        assert job.results["duplicates_skipped"] == 0
        # the externally matched row is left out of schema inference
        assert job.schema_builder_state["record_count"] == 1

        events = _events(session, dataset_id)
        assert [(e.unique_id, e.version) for e in events] == [("ext:1", 1), ("ext:2", 1)]
        assert events[0].data["title"] == "New title"
        assert events[0].last_import_job_id == job.id


def test_version_strategy_adds_new_version(session_factory, make_dataset, write_csv, run_import):
    dataset_id = _external_id_dataset(make_dataset, "version")
    options = _single_dataset(dataset_id)
    run_import(write_csv("a.csv", [{"id": 1, "title": "Draft", "date": "2024-03-01"}]), **options)
    file_id = run_import(write_csv("b.csv", [{"id": 1, "title": "Final", "date": "2024-03-01"}]), **options)

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.results["events_created"] == 1
        assert job.schema_builder_state["record_count"] == 0
        assert job.schema_validation["schema_unchanged"] is True
        assert job.schema_version_number == 1
        events = _events(session, dataset_id)
        assert [(e.unique_id, e.version) for e in events] == [("ext:1", 1), ("ext:1", 2)]
        assert events[1].data["title"] == "Final"


def test_disabled_deduplication_versions_repeated_rows(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset(deduplication_config={"enabled": False})
    file_id = run_import(write_csv("concerts.csv", CONCERTS), **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.duplicates["strategy"] == "disabled"
        assert job.progress["stages"]["analyze-duplicates"]["status"] == "skipped"
        assert job.results["events_created"] == 2
        assert [e.version for e in _events(session, dataset_id)] == [1, 2]


def test_missing_external_id_is_row_error(session_factory, make_dataset, write_csv, run_import):
    dataset_id = _external_id_dataset(make_dataset, "skip")
    file_id = run_import(
        write_csv(
            "a.csv",
            [
                {"id": "A-1", "title": "Has id", "date": "2024-03-01"},
                {"id": None, "title": "No id", "date": "2024-03-02"},
            ],
        ),
        **_single_dataset(dataset_id),
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.results["events_created"] == 1
        assert {(e["stage"], e["row"]) for e in job.errors} == {("analyze-duplicates", 1), ("create-events", 1)}
        assert job.results["errors"] == 1


def test_row_that_cannot_be_materialized_is_skipped(session_factory, make_dataset, write_csv, run_import, monkeypatch):
    from app.domain.imports import event_materializer

    original = event_materializer.extract_timestamp

    def flaky_timestamp(row, field_mappings, now=None):
        if row.get("title") == "Broken":
            raise ValueError("clock drift")
        return original(row, field_mappings, now)

    monkeypatch.setattr(event_materializer, "extract_timestamp", flaky_timestamp)
    dataset_id = make_dataset()
    file_id = run_import(
        write_csv(
            "a.csv",
            [{"title": "Fine", "date": "2024-03-01"}, {"title": "Broken", "date": "2024-03-02"}],
        ),
        **_single_dataset(dataset_id),
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.results["events_created"] == 1
        assert job.results["errors"] == 1
        [error] = job.errors
        assert error["row"] == 1
        assert error["stage"] == "create-events"
        assert "clock drift" in error["error"]


def test_transforms_apply_before_id_and_events(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset(
        id_strategy={"type": "computed", "computed_id_fields": ["name"]},
        transforms=[
            {"type": "string-op", "id": "trim-name", "from_field": "name", "operation": "trim"},
            {"type": "string-op", "id": "lower-name", "from_field": "name", "operation": "lowercase"},
        ],
    )
    file_id = run_import(
        write_csv("a.csv", [{"name": "Gala ", "date": "2024-04-01"}, {"name": "GALA", "date": "2024-04-01"}]),
        **_single_dataset(dataset_id),
    )

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.duplicates["summary"]["internal_duplicates"] == 1
        [event] = _events(session, dataset_id)
        assert event.data["name"] == "gala"
        assert event.unique_id.startswith("comp:")
        assert [t["id"] for t in event.transformations] == ["trim-name", "lower-name"]


def test_invalid_coordinates_fall_back_to_geocoding(session_factory, make_pipeline, geocoder, make_dataset, write_csv, run_import):
    context = make_pipeline(geocoder=geocoder)
    dataset_id = make_dataset()
    rows = [
        {"title": f"Stop {n}", "date": "2024-05-0%d" % n, "lat": 10.0 + n, "lng": 20.5, "address": "Somewhere"}
        for n in range(1, 5)
    ]
    rows.append({"title": "Bad lat", "date": "2024-05-06", "lat": 200.5, "lng": 2.5, "address": "Paris"})
    rows.append({"title": "Nowhere", "date": "2024-05-07", "lat": None, "lng": None, "address": "Atlantis"})
    file_id = run_import(write_csv("tour.csv", rows), context=context, **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.field_mappings["location_path"] == "address"
        assert set(job.geocoding_results) == {"Paris", "Atlantis"}
        assert job.results["geocoded"] == 1

        events = {event.data["title"]: event for event in _events(session, dataset_id)}
        assert events["Stop 1"].coordinate_source["type"] == "import"
        assert events["Bad lat"].coordinate_source["type"] == "geocoded"
        assert events["Bad lat"].latitude == 48.8566
        assert events["Bad lat"].location_name == "Paris"
        assert events["Nowhere"].coordinate_source == {"type": "none"}
        assert events["Nowhere"].latitude is None
        assert any(error["error"] == "Could not geocode 'Atlantis'" for error in job.errors)
    assert geocoder.calls == 2


def test_without_geocoder_invalid_coordinates_are_dropped(session_factory, make_dataset, write_csv, run_import):
    dataset_id = make_dataset()
    rows = [{"title": f"Stop {n}", "date": "2024-05-01", "lat": 10.0 + n, "lng": 20.5} for n in range(1, 5)]
    rows.append({"title": "Bad lat", "date": "2024-05-02", "lat": 200.5, "lng": 2.5})
    file_id = run_import(write_csv("tour.csv", rows), **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.progress["stages"]["geocode-batch"]["status"] == "skipped"
        events = {event.data["title"]: event for event in _events(session, dataset_id)}
        assert events["Bad lat"].latitude is None
        assert events["Bad lat"].coordinate_source["type"] == "none"


def test_batches_span_multiple_tasks(session_factory, make_pipeline, make_dataset, write_csv, run_import):
    context = make_pipeline(
        duplicate_analysis_batch_size=2,
        schema_detection_batch_size=2,
        event_creation_batch_size=2,
    )
    dataset_id = make_dataset()
    rows = [{"title": f"Event {n}", "date": f"2024-06-{n:02d}"} for n in range(1, 6)]
    file_id = run_import(write_csv("many.csv", rows), context=context, **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.results["events_created"] == 5
        assert job.progress["stages"]["create-events"]["batches_processed"] == 3
        assert job.schema_builder_state["record_count"] == 5

    event_batches = [p["batch_number"] for t, p in context.queue.history if t == "create-events"]
    assert event_batches == [0, 1, 2]


def test_blank_lines_do_not_duplicate_rows_across_batches(session_factory, make_pipeline, make_dataset, tmp_path, run_import):
    context = make_pipeline(schema_detection_batch_size=2, event_creation_batch_size=2)
    dataset_id = make_dataset(deduplication_config={"enabled": False})
    path = tmp_path / "gaps.csv"
    path.write_text("title,date\nA,2024-06-01\n\nB,2024-06-02\nC,2024-06-03\nD,2024-06-04\n")
    file_id = run_import(str(path), context=context, **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.progress["total_rows"] == 4
        assert job.results["events_created"] == 4
        assert sorted(event.data["title"] for event in _events(session, dataset_id)) == ["A", "B", "C", "D"]


def test_redelivered_batch_does_not_duplicate_events(session_factory, make_pipeline, make_dataset, write_csv):
    from app.domain.imports.dataset_detection import register_import_file

    context = make_pipeline(event_creation_batch_size=2)
    dataset_id = make_dataset()
    rows = [{"title": f"Event {n}", "date": f"2024-06-{n:02d}"} for n in range(1, 6)]
    with session_factory() as session:
        register_import_file(
            session,
            context,
            original_name="many.csv",
            storage_path=write_csv("many.csv", rows),
            processing_options=_single_dataset(dataset_id),
        )

    queue = context.queue
    while queue.pending and not (queue.pending[0][0] == "create-events" and queue.pending[0][1]["batch_number"] == 1):
        queue.run_next()
    job_id = queue.pending[0][1]["import_job_id"]

    redelivered = handle_create_events(context, {"import_job_id": job_id, "batch_number": 0})
    assert redelivered["skipped"] is True
    assert redelivered["reason"] == "already_processed"

    queue.run_until_empty()
    stale = handle_create_events(context, {"import_job_id": job_id, "batch_number": 2})
    assert stale["reason"] == "stale"

    with session_factory() as session:
        job = session.get(ImportJob, job_id)
        assert job.stage == ProcessingStage.COMPLETED.value
        assert job.results["events_created"] == 5
        assert session.query(Event).filter(Event.import_job_id == job_id).count() == 5


def test_quota_exceeded_fails_job(session_factory, make_user, make_dataset, write_csv, run_import):
    user_id = make_user(quota_overrides={"events_per_import": 2})
    dataset_id = make_dataset(owner_id=user_id)
    rows = [{"title": f"Event {n}", "date": "2024-07-01"} for n in range(3)]
    file_id = run_import(write_csv("big.csv", rows), owner_id=user_id, **_single_dataset(dataset_id))

    with session_factory() as session:
        [job] = _jobs(session, file_id)
        assert job.stage == ProcessingStage.FAILED.value
        assert "maximum events per import" in job.error_message
        assert session.query(Event).count() == 0


def test_completed_import_increments_usage(session_factory, make_user, make_dataset, write_csv, run_import):
    user_id = make_user()
    dataset_id = make_dataset(owner_id=user_id)
    run_import(write_csv("concerts.csv", CONCERTS), owner_id=user_id, **_single_dataset(dataset_id))

    with session_factory() as session:
        usage = session.query(UserUsage).filter(UserUsage.user_id == user_id).one()
        assert usage.total_events_created == 1
        assert usage.import_jobs_completed == 1


def test_workbook_sheets_fan_out_to_datasets(session_factory, make_dataset, write_xlsx, run_import):
    concerts_id = make_dataset("Concerts")
    talks_id = make_dataset("Talks")
    path = write_xlsx(
        "program.xlsx",
        {
            "Concerts": [{"title": "Jazz Night", "date": "2024-08-01"}],
            "Talks": [{"title": "Keynote", "date": "2024-08-02"}, {"title": "Panel", "date": "2024-08-03"}],
            "Notes": [{"text": "ignore me"}],
        },
    )
    file_id = run_import(
        path,
        dataset_mapping={
            "mapping_type": "multiple",
            "sheet_mappings": [
                {"sheet_identifier": 0, "dataset_id": concerts_id},
                {"sheet_identifier": "Talks", "dataset_id": talks_id},
                {"sheet_identifier": "Notes", "skip_if_missing": True},
            ],
        },
    )

    with session_factory() as session:
        import_file = session.get(ImportFile, file_id)
        jobs = _jobs(session, file_id)
        assert [(job.sheet_index, job.dataset_id) for job in jobs] == [(0, concerts_id), (1, talks_id)]
        assert all(job.stage == ProcessingStage.COMPLETED.value for job in jobs)
        assert import_file.status == "completed"
        assert import_file.datasets_count == 2
        assert import_file.jobs_completed == 2
        assert [sheet["name"] for sheet in import_file.sheet_metadata] == ["Concerts", "Talks", "Notes"]
        assert len(_events(session, talks_id)) == 2


def test_file_fails_when_any_job_fails(session_factory, make_dataset, write_xlsx, run_import):
    good_id = make_dataset("Good")
    strict_id = make_dataset("Strict", schema_config={"processing_mode": "strict"})
    run_import(
        write_xlsx("seed.xlsx", {"Sheet1": [{"title": "Seed", "date": "2024-08-01"}]}),
        **_single_dataset(strict_id),
    )
    file_id = run_import(
        write_xlsx(
            "mixed.xlsx",
            {
                "Good": [{"title": "Fine", "date": "2024-08-02"}],
                "Strict": [{"title": "Drift", "date": "2024-08-03", "extra": "x"}],
            },
        ),
        dataset_mapping={
            "mapping_type": "multiple",
            "sheet_mappings": [
                {"sheet_identifier": "Good", "dataset_id": good_id},
                {"sheet_identifier": "Strict", "dataset_id": strict_id},
            ],
        },
    )

    with session_factory() as session:
        import_file = session.get(ImportFile, file_id)
        stages = [job.stage for job in _jobs(session, file_id)]
        assert stages == [ProcessingStage.COMPLETED.value, ProcessingStage.FAILED.value]
        assert import_file.status == "failed"
        assert import_file.jobs_completed == 2


def test_file_without_data_rows_fails(session_factory, write_csv, run_import):
    file_id = run_import(write_csv("empty.csv", [], columns=["title", "date"]))

    with session_factory() as session:
        import_file = session.get(ImportFile, file_id)
        assert import_file.status == "failed"
        assert import_file.error_message == "File contains no data rows"
        assert _jobs(session, file_id) == []
