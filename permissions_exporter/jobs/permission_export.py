import time
from collections import Counter
from typing import Any, Callable, Dict, Optional, Sequence

from permissions_exporter.config import Settings
from permissions_exporter.drives import resolve_site_and_drive
from permissions_exporter.exporters import EXPORTERS
from permissions_exporter.graph_client import GraphClient
from permissions_exporter.models import PermissionRecord, RetrievalResult
from permissions_exporter.retrieval import retrieve_batched, retrieve_sequential
from permissions_exporter.retry import RetryController
from permissions_exporter.runtime_logger import emit
from permissions_exporter.walker import walk_files


TOP_ROLES = 5


def build_summary(records: Sequence[PermissionRecord], elapsed_seconds: float) -> Dict[str, Any]:
    role_counts: Counter = Counter()
    for record in records:
        role_counts.update(record.roles)
    inherited = sum(1 for r in records if r.is_inherited)
    return {
        "total_permissions": len(records),
        "unique_files": len({r.file_id for r in records}),
        "inherited_permissions": inherited,
        "direct_permissions": len(records) - inherited,
        "unique_grantees": len({r.granted_to_email for r in records}),
        "elapsed_seconds": round(elapsed_seconds, 2),
        "top_roles": role_counts.most_common(TOP_ROLES),
    }


def _retrieve(client: GraphClient, settings: Settings, drive_id: str, files, sleep) -> RetrievalResult:
    if settings.mode == "sequential":
        return retrieve_sequential(client, drive_id, files, delay_seconds=settings.delay_seconds, sleep=sleep)
    controller = RetryController(settings.max_retry_attempts, sleep=sleep)
    return retrieve_batched(
        client,
        drive_id,
        files,
        batch_size=settings.batch_size,
        delay_seconds=settings.delay_seconds,
        controller=controller,
        sleep=sleep,
    )


def run_permission_export(
    settings: Settings,
    client: GraphClient,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    started = clock()
    stages: Dict[str, Any] = {}

    emit("INFO", "CLI", "Step 2: Retrieving SharePoint site and drive information")
    site_id, drive_id = resolve_site_and_drive(client, settings.site_url, settings.library_name)
    stages["resolve"] = {"site_id": site_id, "drive_id": drive_id}

    emit("INFO", "CLI", f"Step 3: Fetching file permissions (mode={settings.mode}), this may take a while")
    files = walk_files(client, drive_id)
    stages["walk"] = {"files": len(files)}

    result = _retrieve(client, settings, drive_id, files, sleep)
    stages["permissions"] = {
        "records": len(result.records),
        "errors": result.error_count,
        "throttle_events": result.throttle_count,
    }

    output_path: Optional[str] = None
    if not result.records and result.error_count:
        emit(
            "ERROR",
            "CLI",
            f"No permissions retrieved; {result.error_count} of {len(files)} files failed "
            f"(throttle_events={result.throttle_count})",
        )
        stages["export"] = {"skipped": True, "reason": "all_failed"}
    elif not result.records:
        emit("WARN", "CLI", "No permissions found. The document library may be empty or inaccessible.")
        stages["export"] = {"skipped": True, "reason": "no_permissions"}
    else:
        emit("INFO", "CLI", f"Step 4: Exporting permissions to {settings.export_format.upper()}")
        exporter = EXPORTERS[settings.export_format]
        output_path = exporter(result.records, settings.output_path, include_inherited=settings.include_inherited)
        stages["export"] = {"path": output_path}

    return {
        "stages": stages,
        "result": result,
        "output_path": output_path,
        "summary": build_summary(result.records, clock() - started),
    }
