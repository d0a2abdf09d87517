#!/usr/bin/env python3
"""
Run a local CSV or Excel file through the import pipeline.

The file is registered, every stage runs synchronously on the inline task
queue, and the resulting job states are printed as JSON.

Usage:
    python scripts/run_import.py events.csv
    python scripts/run_import.py events.xlsx --dataset-id 3 --auto-approve
    python scripts/run_import.py events.csv --geocode-file locations.json --schema-mode additive
"""
import argparse
import json
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.core.config import settings  # noqa: E402
from app.core.logging_config import configure_logging  # noqa: E402
from app.db.models import ImportFile, create_tables  # noqa: E402
from app.db.session import build_engine  # noqa: E402
from app.domain.imports.dataset_detection import register_import_file  # noqa: E402
from app.domain.imports.geocoding import StaticGeocoder  # noqa: E402
from app.domain.imports.jobs import serialize_import_file, serialize_import_job  # noqa: E402
from app.domain.imports.orchestrator import approve_import_job  # noqa: E402
from app.domain.imports.pipeline import build_pipeline  # noqa: E402
from app.domain.imports.stages import ProcessingStage  # noqa: E402
from app.domain.imports.tasks import InlineTaskQueue  # noqa: E402

logger = logging.getLogger("run_import")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import a CSV or Excel file into a dataset")
    parser.add_argument("path", help="CSV or Excel file to import")
    parser.add_argument("--database-url", default=settings.database_url, help="Database URL (default: settings)")
    parser.add_argument("--dataset-id", type=int, help="Import every sheet into this dataset")
    parser.add_argument("--dataset-name", help="Name for the dataset created for the file")
    parser.add_argument(
        "--schema-mode",
        choices=("strict", "additive", "flexible"),
        help="Schema processing mode for the jobs of this file",
    )
    parser.add_argument("--owner-id", type=int, help="User the import is charged to")
    parser.add_argument(
        "--geocode-file",
        help='JSON object mapping location strings to [lat, lng] for the static geocoder',
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve jobs that stop for schema approval and keep going",
    )
    parser.add_argument("--log-level", default=settings.log_level)
    return parser.parse_args(argv)


def load_geocoder(path):
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as handle:
        return StaticGeocoder(json.load(handle))


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    source = os.path.abspath(args.path)
    if not os.path.exists(source):
        print(f"File not found: {source}", file=sys.stderr)
        return 1

    engine = build_engine(args.database_url)
    create_tables(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    queue = InlineTaskQueue()
    context = build_pipeline(session_factory, queue=queue, geocoder=load_geocoder(args.geocode_file))

    options = {}
    if args.dataset_id is not None:
        options["dataset_mapping"] = {"mapping_type": "single", "dataset_id": args.dataset_id}
    if args.dataset_name:
        options["dataset_name"] = args.dataset_name
    if args.schema_mode:
        options["schema_mode"] = args.schema_mode

    session = session_factory()
    try:
        import_file = register_import_file(
            session,
            context,
            original_name=os.path.basename(source),
            storage_path=source,
            owner_id=args.owner_id,
            processing_options=options,
        )
        file_id = import_file.id
        queue.run_until_empty()

        session.expire_all()
        import_file = session.get(ImportFile, file_id)
        for job in list(import_file.jobs):
            if job.stage != ProcessingStage.AWAIT_APPROVAL.value:
                continue
            reason = (job.schema_validation or {}).get("approval_reason")
            if not args.auto_approve:
                logger.warning("Job %s is waiting for schema approval: %s", job.id, reason)
                continue
            logger.info("Approving job %s (%s)", job.id, reason)
            approve_import_job(session, job.id, context, notes="Approved from run_import")
            queue.run_until_empty()

        session.expire_all()
        import_file = session.get(ImportFile, file_id)
        report = {
            "file": serialize_import_file(import_file),
            "jobs": [serialize_import_job(job) for job in import_file.jobs],
        }
        print(json.dumps(report, indent=2, default=str))
        return 0 if import_file.status != "failed" else 2
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
