from typing import Optional, Tuple
from urllib.parse import urlparse

from permissions_exporter.graph_client import GraphClient
from permissions_exporter.runtime_logger import emit


class DriveResolutionError(RuntimeError):
    pass


def _site_key(site_url: str) -> str:
    parsed = urlparse(site_url)
    if not parsed.hostname:
        raise DriveResolutionError(f"Site URL has no host: {site_url}")
    path = parsed.path.rstrip("/")
    if not path:
        return parsed.hostname
    return f"{parsed.hostname}:{path}"


def resolve_site_and_drive(
    client: GraphClient,
    site_url: str,
    library_name: Optional[str] = None,
) -> Tuple[str, str]:
    emit("INFO", "DRIVES", f"Retrieving site information: url={site_url}")
    site = client.get_json(f"/sites/{_site_key(site_url)}")
    site_id = (site or {}).get("id")
    if not site_id:
        raise DriveResolutionError("Failed to retrieve site information")
    emit("INFO", "DRIVES", f"Site resolved: site_id={site_id}")

    if library_name and library_name.strip():
        wanted = library_name.strip().lower()
        drives = client.collect_paged(f"/sites/{site_id}/drives")
        match = next((d for d in drives if (d.get("name") or "").lower() == wanted), None)
        if not match or not match.get("id"):
            raise DriveResolutionError(f"Document library '{library_name}' not found")
        drive_id = match["id"]
        emit("INFO", "DRIVES", f"Document library found: name={library_name} drive_id={drive_id}")
    else:
        drive = client.get_json(f"/sites/{site_id}/drive")
        drive_id = (drive or {}).get("id")
        if not drive_id:
            raise DriveResolutionError("Failed to retrieve default document library")
        emit("INFO", "DRIVES", f"Using default document library: drive_id={drive_id}")

    return site_id, drive_id
