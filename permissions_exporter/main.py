"""Export every file permission of a SharePoint document library.

Usage:
    python -m permissions_exporter [options]

Connection settings come from the environment (ENTRA_TENANT_ID,
ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET, SHAREPOINT_SITE_URL, ...); the options
below override the export settings for a single run.
"""

import argparse
import sys
from typing import Any, Dict, List, Optional

from permissions_exporter.auth import TokenProvider
from permissions_exporter.config import EXPORT_FORMATS, ConfigError, Settings, load_settings, validate_settings
from permissions_exporter.graph_client import GraphClient
from permissions_exporter.jobs.permission_export import run_permission_export
from permissions_exporter.runtime_logger import emit


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SharePoint Document Library Permissions Exporter")
    parser.add_argument("--format", choices=EXPORT_FORMATS, help="Export format (default from EXPORT_FORMAT)")
    parser.add_argument("--output", help="Output file name without extension")
    parser.add_argument("--library", help="Document library name (default library when omitted)")
    parser.add_argument(
        "--sequential",
        action="store_true",
        help="Fetch permissions one file at a time instead of using $batch",
    )
    parser.add_argument(
        "--exclude-inherited",
        action="store_true",
        help="Leave inherited permissions out of the export",
    )
    return parser.parse_args(argv)


def _apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    return settings.with_overrides(
        export_format=args.format,
        output_file=args.output,
        library_name=args.library,
        mode="sequential" if args.sequential else None,
        include_inherited=False if args.exclude_inherited else None,
    )


def _display_summary(outcome: Dict[str, Any]):
    summary = outcome["summary"]
    result = outcome["result"]
    emit("INFO", "CLI", "Summary Statistics")
    emit("INFO", "CLI", f"Total Permissions Exported: {summary['total_permissions']}")
    emit("INFO", "CLI", f"Unique Files: {summary['unique_files']}")
    emit("INFO", "CLI", f"Inherited Permissions: {summary['inherited_permissions']}")
    emit("INFO", "CLI", f"Direct Permissions: {summary['direct_permissions']}")
    emit("INFO", "CLI", f"Unique Users/Groups: {summary['unique_grantees']}")
    emit("INFO", "CLI", f"Errors encountered: {result.error_count}")
    emit("INFO", "CLI", f"Throttle events: {result.throttle_count}")
    emit("INFO", "CLI", f"Total Execution Time: {summary['elapsed_seconds']:.2f} seconds")
    if summary["top_roles"]:
        roles = ", ".join(f"{role}={count}" for role, count in summary["top_roles"])
        emit("INFO", "CLI", f"Top {len(summary['top_roles'])} Most Common Roles: {roles}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    emit("INFO", "CLI", "SharePoint Document Library Permissions Exporter")

    try:
        settings = validate_settings(_apply_args(load_settings(), args))
    except ConfigError as exc:
        for problem in exc.problems:
            emit("ERROR", "CLI", problem)
        emit("ERROR", "CLI", "Configuration validation failed")
        return 1

    emit(
        "INFO",
        "CLI",
        f"Configuration loaded: site={settings.site_url} library={settings.library_name or '(default)'} "
        f"output={settings.output_path} mode={settings.mode} batch_size={settings.batch_size} "
        f"delay_ms={settings.delay_ms} max_retry_attempts={settings.max_retry_attempts}",
    )

    emit("INFO", "CLI", "Step 1: Authenticating with Microsoft Graph API")
    tokens = TokenProvider(settings.tenant_id, settings.client_id, settings.client_secret)
    if not tokens.validate_credentials():
        emit("ERROR", "CLI", "Invalid credentials. Please check your Entra ID configuration.")
        return 1

    try:
        tokens.get_token()
        emit("INFO", "AUTH", "Successfully authenticated with Microsoft Graph API")
        outcome = run_permission_export(settings, GraphClient(tokens))
    except Exception as exc:
        emit("ERROR", "CLI", f"Fatal error: {exc}")
        return 1

    if outcome["output_path"] or outcome["result"].error_count:
        _display_summary(outcome)
    if outcome["output_path"]:
        emit("INFO", "CLI", "Process completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
