"""Server configuration."""

import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from reelvault.common.constants import (
    ALLOWED_EXTENSIONS,
    DEFAULT_QUOTA_BYTES,
    DEFAULT_REDIS_URL,
    DEFAULT_SERVER_PORT,
    GRACE_BYTES,
    MAX_UPLOAD_BYTES,
    PART_URL_TTL_SECONDS,
    QUEUE_MAX_RECEIVES,
    QUEUE_VISIBILITY_TIMEOUT,
    RESERVATION_TTL_SECONDS,
)

logger = logging.getLogger("reelvault.server.config")

# Fields that can be hot-reloaded without a server restart.
HOT_RELOADABLE_FIELDS = frozenset(
    {
        "default_quota_bytes",
        "grace_bytes",
        "max_upload_bytes",
        "allowed_extensions",
        "auth_tokens",
        "part_url_ttl",
    }
)

# Fields given as human-readable sizes ("256GB") in YAML or env.
_SIZE_FIELDS = ("default_quota_bytes", "grace_bytes", "max_upload_bytes")


class ServerSettings(BaseSettings):
    """Server settings loaded from environment or config file."""

    model_config = SettingsConfigDict(env_prefix="REELVAULT_", env_nested_delimiter="__")

    # Server
    host: str = Field("0.0.0.0", description="Server bind host")  # nosec B104
    port: int = Field(DEFAULT_SERVER_PORT, description="Server port")
    workers: int = Field(1, description="Number of uvicorn workers")
    public_url: str = Field(
        "",
        description="Externally reachable base URL used in signed part URLs "
        "(default: http://<host>:<port>). Env: REELVAULT_PUBLIC_URL",
    )
    log_level: str = Field("INFO", description="Root log level")

    # Quota
    default_quota_bytes: int = Field(DEFAULT_QUOTA_BYTES, description="Quota of lazily created profiles")
    grace_bytes: int = Field(GRACE_BYTES, description="Tolerated overshoot: used + reserved <= quota + grace")
    max_upload_bytes: int = Field(MAX_UPLOAD_BYTES, description="Largest single upload")
    allowed_extensions: list[str] = Field(default_factory=lambda: list(ALLOWED_EXTENSIONS))
    reservation_ttl: int = Field(RESERVATION_TTL_SECONDS, description="Seconds before a reservation is reclaimable")
    part_url_ttl: int = Field(PART_URL_TTL_SECONDS, description="Lifetime of signed part URLs in seconds")

    # State Backend
    state_backend: Literal["memory", "file", "redis"] = Field(
        "file", description="State backend type: memory (test), file (default), redis (multi-worker)"  # noqa: E501
    )
    state_path: Path = Field(Path("./data"), description="Directory for the file state backend")
    redis_url: str = Field(DEFAULT_REDIS_URL, description="Redis connection URL (only used if state_backend=redis)")

    # Object store
    object_store: Literal["local", "s3"] = Field("local", description="Object store: local (default) or s3")
    storage_path: Path = Field(Path("./storage"), description="Root directory of the local object store")
    bucket: str = Field("videos", description="Bucket holding uploaded videos")
    thumbnail_bucket: str = Field("thumbnails", description="Bucket holding derived thumbnails")
    signing_secret: str = Field("", description="HMAC secret for local part URLs (random when empty)")
    s3_endpoint_url: Optional[str] = Field(None, description="Custom S3 endpoint (MinIO, Spaces, ...)")
    s3_region: Optional[str] = Field(None, description="S3 region")
    s3_access_key_id: Optional[str] = Field(None, description="S3 access key (default: boto3 credential chain)")
    s3_secret_access_key: Optional[str] = Field(None, description="S3 secret key")

    # Auth
    auth_enabled: bool = Field(True, description="Enable token authentication")
    auth_tokens: list[str] = Field(default_factory=list, description="Valid API tokens")
    admin_tokens: list[str] = Field(default_factory=list, description="Tokens allowed on /api/admin")

    # CORS
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")

    # Background jobs
    deletion_worker_enabled: bool = Field(True, description="Run the deletion worker inside the server")
    deletion_poll_interval: float = Field(2.0, description="Seconds between empty deletion queue polls")
    queue_visibility_timeout: int = Field(QUEUE_VISIBILITY_TIMEOUT, description="Seconds a received job stays hidden")
    queue_max_receives: int = Field(QUEUE_MAX_RECEIVES, description="Receives before a job is dead-lettered")
    reconcile_interval: int = Field(3600, description="Seconds between reconciler passes (0 = disabled)")
    reconcile_max_keys: int = Field(10000, description="Objects inspected per orphan sweep")
    reconcile_on_startup: bool = Field(True, description="Recompute ledgers from records on startup")

    # Config file watching (hot-reload)
    config_watch: bool = Field(
        False,
        description="Watch config file for changes and auto-reload hot settings. " "Env: REELVAULT_CONFIG_WATCH",
    )
    config_watch_interval: int = Field(
        30,
        description="Config file watch interval in seconds. " "Env: REELVAULT_CONFIG_WATCH_INTERVAL",
    )

    def resolved_public_url(self) -> str:
        if self.public_url:
            return self.public_url.rstrip("/")
        host = "127.0.0.1" if self.host in ("0.0.0.0", "::") else self.host  # nosec B104
        return f"http://{host}:{self.port}"


def parse_size(value: str) -> int:
    """Parse human-readable size string to bytes.

    Examples: '100MB', '1GB', '500kb', '1073741824'
    """
    value = value.strip().upper()
    multipliers = {
        "B": 1,
        "KB": 1024,
        "MB": 1024**2,
        "GB": 1024**3,
        "TB": 1024**4,
        "K": 1024,
        "M": 1024**2,
        "G": 1024**3,
        "T": 1024**4,
    }
    for suffix, mult in sorted(multipliers.items(), key=lambda x: -len(x[0])):
        if value.endswith(suffix):
            num = value[: -len(suffix)].strip()
            return int(float(num) * mult)
    return int(value)


def _size(value: object) -> int:
    return parse_size(value) if isinstance(value, str) else int(value)  # type: ignore[call-overload]


def _parse_yaml_to_settings_dict(config: dict) -> dict:
    """Convert a parsed YAML config dict into a flat settings dict.

    This is the single source of truth for YAML -> settings field mapping.
    Used by both initial load and hot-reload.
    """
    d: dict = {}

    if "server" in config:
        d.update(config["server"])
    if "state" in config:
        st = config["state"]
        if "backend" in st:
            d["state_backend"] = st["backend"]
        if "path" in st:
            d["state_path"] = st["path"]
        if "redis_url" in st:
            d["redis_url"] = st["redis_url"]
    if "auth" in config:
        if "enabled" in config["auth"]:
            d["auth_enabled"] = config["auth"]["enabled"]
        if "tokens" in config["auth"]:
            d["auth_tokens"] = config["auth"]["tokens"]
        if "admin_tokens" in config["auth"]:
            d["admin_tokens"] = config["auth"]["admin_tokens"]
    if "quota" in config:
        q = config["quota"]
        if "default" in q:
            d["default_quota_bytes"] = _size(q["default"])
        if "grace" in q:
            d["grace_bytes"] = _size(q["grace"])
        if "max_upload" in q:
            d["max_upload_bytes"] = _size(q["max_upload"])
        if "allowed_extensions" in q:
            d["allowed_extensions"] = [str(ext).lower().lstrip(".") for ext in q["allowed_extensions"]]
        if "reservation_ttl" in q:
            d["reservation_ttl"] = q["reservation_ttl"]
        if "part_url_ttl" in q:
            d["part_url_ttl"] = q["part_url_ttl"]
    if "storage" in config:
        st = config["storage"]
        if "backend" in st:
            d["object_store"] = st["backend"]
        if "path" in st:
            d["storage_path"] = st["path"]
        for key in ("bucket", "thumbnail_bucket", "signing_secret"):
            if key in st:
                d[key] = st[key]
        s3 = st.get("s3", {})
        for key in ("endpoint_url", "region", "access_key_id", "secret_access_key"):
            if key in s3:
                d[f"s3_{key}"] = s3[key]
    if "jobs" in config:
        jobs = config["jobs"]
        for key in (
            "deletion_worker_enabled",
            "deletion_poll_interval",
            "queue_visibility_timeout",
            "queue_max_receives",
            "reconcile_interval",
            "reconcile_max_keys",
            "reconcile_on_startup",
        ):
            if key in jobs:
                d[key] = jobs[key]

    for key in _SIZE_FIELDS:
        if key in d:
            d[key] = _size(d[key])

    return d


def _apply_env_overrides(settings_dict: dict) -> None:
    """Apply environment variable overrides to a settings dict (in-place)."""
    for key in _SIZE_FIELDS:
        env_value = os.environ.get(f"REELVAULT_{key.upper()}", "")
        if env_value:
            settings_dict[key] = parse_size(env_value)

    env_tokens = os.environ.get("REELVAULT_AUTH_TOKENS", "")
    if env_tokens:
        try:
            parsed = json.loads(env_tokens)
            settings_dict["auth_tokens"] = parsed if isinstance(parsed, list) else [str(parsed)]
        except json.JSONDecodeError:
            settings_dict["auth_tokens"] = [v.strip() for v in env_tokens.split(",") if v.strip()]


# ── Config file auto-discovery ────────────────────────────────

# Paths searched in order when no explicit config is given.
_CONFIG_SEARCH_PATHS = [
    Path("./config.yaml"),
    Path("./config/config.yaml"),
    Path.home() / ".reelvault" / "server.yaml",
]


def discover_config_path() -> Optional[Path]:
    """Find a config file using auto-discovery.

    Search order:
      1. ``$REELVAULT_CONFIG`` environment variable
      2. ``./config.yaml``
      3. ``./config/config.yaml``
      4. ``~/.reelvault/server.yaml``

    Returns:
        Path to the discovered config file, or None.
    """
    env_path = os.environ.get("REELVAULT_CONFIG", "")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p
        logger.warning("$REELVAULT_CONFIG=%s does not exist", env_path)

    for candidate in _CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return None


def load_server_settings(config_path: Optional[Path] = None) -> ServerSettings:
    """Load server settings from config file + environment variables.

    Args:
        config_path: Explicit path to config file.  When ``None``,
            auto-discovery is used (see :func:`discover_config_path`).

    Returns:
        ServerSettings with the resolved config path stashed on it, so
        hot-reload can re-read the same file later.
    """
    import yaml

    resolved_path = config_path
    if resolved_path is None:
        resolved_path = discover_config_path()

    settings_dict: dict = {}

    if resolved_path and resolved_path.exists():
        with open(resolved_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        settings_dict = _parse_yaml_to_settings_dict(config)
        logger.info("Loaded config from %s", resolved_path.resolve())
    else:
        logger.info("No config file found, using defaults + environment variables")

    _apply_env_overrides(settings_dict)

    settings = ServerSettings(**settings_dict)
    settings._config_path = resolved_path  # type: ignore[attr-defined]
    return settings


def reload_hot_settings(settings: ServerSettings) -> dict[str, tuple]:
    """Re-read the config file and update hot-reloadable fields in place.

    Only fields listed in ``HOT_RELOADABLE_FIELDS`` are updated.
    Static fields (host, port, backends, paths, etc.) are ignored.

    Args:
        settings: The live ServerSettings instance to update.

    Returns:
        A dict of ``{field: (old_value, new_value)}`` for every field
        that actually changed.
    """
    import yaml

    config_path: Optional[Path] = getattr(settings, "_config_path", None)
    if not config_path or not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    fresh_dict = _parse_yaml_to_settings_dict(config)
    _apply_env_overrides(fresh_dict)

    changes: dict[str, tuple] = {}
    for field in HOT_RELOADABLE_FIELDS:
        if field not in fresh_dict:
            continue
        old = getattr(settings, field)
        new = fresh_dict[field]
        if old != new:
            changes[field] = (old, new)
            object.__setattr__(settings, field, new)

    return changes
