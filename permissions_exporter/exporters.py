import csv
import json
import os
from typing import Any, Dict, List, Sequence

from permissions_exporter.models import PermissionRecord
from permissions_exporter.runtime_logger import emit


CSV_COLUMNS = [
    ("File Name", lambda r: r.file_name),
    ("Web URL", lambda r: r.web_url),
    ("File ID", lambda r: r.file_id),
    ("Permission ID", lambda r: r.permission_id),
    ("Roles", lambda r: r.roles_string),
    ("Granted To (Name)", lambda r: r.granted_to_display_name),
    ("Granted To (Email)", lambda r: r.granted_to_email),
    ("Is Inherited", lambda r: str(r.is_inherited)),
    ("Inherited From", lambda r: r.inherited_from),
]


def filter_inherited(records: Sequence[PermissionRecord], include_inherited: bool) -> List[PermissionRecord]:
    if include_inherited:
        return list(records)
    kept = [r for r in records if not r.is_inherited]
    emit("INFO", "EXPORT", f"Filtering: {len(kept)} of {len(records)} permissions (inherited permissions excluded)")
    return kept


def _ensure_parent_dir(output_path: str):
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def export_csv(records: Sequence[PermissionRecord], output_path: str, *, include_inherited: bool = True) -> str:
    rows = filter_inherited(records, include_inherited)
    emit("INFO", "EXPORT", f"Exporting {len(rows)} permission records to CSV")
    _ensure_parent_dir(output_path)
    try:
        with open(output_path, "w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle, quoting=csv.QUOTE_ALL)
            writer.writerow([header for header, _ in CSV_COLUMNS])
            for record in rows:
                writer.writerow([(getter(record) or "").strip() for _, getter in CSV_COLUMNS])
    except OSError as exc:
        emit("ERROR", "EXPORT", f"Error exporting to CSV: path={output_path} error={exc}")
        raise
    full_path = os.path.abspath(output_path)
    emit("INFO", "EXPORT", f"Successfully exported to: {full_path}")
    return full_path


def group_by_file(records: Sequence[PermissionRecord]) -> List[Dict[str, Any]]:
    grouped: Dict[str, Dict[str, Any]] = {}
    for record in records:
        entry = grouped.get(record.file_id)
        if entry is None:
            entry = {
                "fileName": record.file_name,
                "webUrl": record.web_url,
                "fileId": record.file_id,
                "permissions": [],
            }
            grouped[record.file_id] = entry
        entry["permissions"].append(
            {
                "permissionId": record.permission_id,
                "roles": list(record.roles),
                "grantedToDisplayName": record.granted_to_display_name,
                "grantedToEmail": record.granted_to_email,
                "isInherited": record.is_inherited,
                "inheritedFrom": record.inherited_from,
            }
        )
    return list(grouped.values())


def export_json(records: Sequence[PermissionRecord], output_path: str, *, include_inherited: bool = True) -> str:
    rows = filter_inherited(records, include_inherited)
    emit("INFO", "EXPORT", f"Exporting {len(rows)} permission records to JSON")
    _ensure_parent_dir(output_path)
    try:
        with open(output_path, "w", encoding="utf-8") as handle:
            json.dump(group_by_file(rows), handle, indent=2, ensure_ascii=False)
    except OSError as exc:
        emit("ERROR", "EXPORT", f"Error exporting to JSON: path={output_path} error={exc}")
        raise
    full_path = os.path.abspath(output_path)
    emit("INFO", "EXPORT", f"Successfully exported to: {full_path}")
    return full_path


EXPORTERS = {
    "csv": export_csv,
    "json": export_json,
}
