import os
from dataclasses import dataclass, replace
from typing import List, Mapping, Optional


MAX_GRAPH_BATCH_SIZE = 20
EXPORT_FORMATS = ("csv", "json")
EXPORT_MODES = ("batched", "sequential")
PLACEHOLDER_MARKERS = ("your-", "-here")

REQUIRED_SETTINGS = {
    "tenant_id": "ENTRA_TENANT_ID",
    "client_id": "ENTRA_CLIENT_ID",
    "client_secret": "ENTRA_CLIENT_SECRET",
    "site_url": "SHAREPOINT_SITE_URL",
}


class ConfigError(ValueError):
    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


@dataclass(frozen=True)
class Settings:
    tenant_id: str
    client_id: str
    client_secret: str
    site_url: str
    library_name: Optional[str] = None
    output_file: str = "SharePointPermissions"
    export_format: str = "csv"
    delay_ms: int = 100
    batch_size: int = 20
    max_retry_attempts: int = 3
    include_inherited: bool = True
    mode: str = "batched"

    @property
    def output_path(self) -> str:
        return f"{self.output_file}.{self.export_format}"

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000.0

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})


def _is_enabled(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "t", "yes", "y", "on"}


def _int_setting(env: Mapping[str, str], name: str, default: int, problems: List[str]) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        problems.append(f"{name} must be an integer (got {raw!r})")
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    problems: List[str] = []
    settings = Settings(
        tenant_id=env.get("ENTRA_TENANT_ID", ""),
        client_id=env.get("ENTRA_CLIENT_ID", ""),
        client_secret=env.get("ENTRA_CLIENT_SECRET", ""),
        site_url=env.get("SHAREPOINT_SITE_URL", ""),
        library_name=(env.get("SHAREPOINT_LIBRARY_NAME") or "").strip() or None,
        output_file=(env.get("EXPORT_OUTPUT_FILE") or "").strip() or "SharePointPermissions",
        export_format=(env.get("EXPORT_FORMAT") or "csv").strip().lower(),
        delay_ms=_int_setting(env, "EXPORT_DELAY_MS", 100, problems),
        batch_size=_int_setting(env, "EXPORT_BATCH_SIZE", 20, problems),
        max_retry_attempts=_int_setting(env, "EXPORT_MAX_RETRY_ATTEMPTS", 3, problems),
        include_inherited=_is_enabled(env.get("EXPORT_INCLUDE_INHERITED"), default=True),
        mode=(env.get("EXPORT_MODE") or "batched").strip().lower(),
    )
    if problems:
        raise ConfigError(problems)
    return settings


def _is_placeholder(value: str) -> bool:
    return any(marker in value for marker in PLACEHOLDER_MARKERS)


def validate_settings(settings: Settings) -> Settings:
    problems: List[str] = []
    for attr, env_name in REQUIRED_SETTINGS.items():
        value = getattr(settings, attr) or ""
        if not value.strip() or _is_placeholder(value):
            problems.append(f"Missing or invalid configuration: {env_name}")

    if settings.export_format not in EXPORT_FORMATS:
        problems.append(f"EXPORT_FORMAT must be one of {', '.join(EXPORT_FORMATS)}")
    if settings.mode not in EXPORT_MODES:
        problems.append(f"EXPORT_MODE must be one of {', '.join(EXPORT_MODES)}")
    if not 1 <= settings.batch_size <= MAX_GRAPH_BATCH_SIZE:
        problems.append(f"EXPORT_BATCH_SIZE must be between 1 and {MAX_GRAPH_BATCH_SIZE}")
    if settings.delay_ms < 0:
        problems.append("EXPORT_DELAY_MS must be >= 0")
    if settings.max_retry_attempts < 0:
        problems.append("EXPORT_MAX_RETRY_ATTEMPTS must be >= 0")

    if problems:
        raise ConfigError(problems)
    return settings
