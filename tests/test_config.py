"""
Unit tests: config auto-discovery, YAML parsing, hot reload.

No server is started; everything runs in temporary directories.

Run:
    python -m pytest tests/test_config.py -v
"""

import textwrap

from reelvault.common.constants import ALLOWED_EXTENSIONS, DEFAULT_SERVER_PORT
from reelvault.server.config import (
    HOT_RELOADABLE_FIELDS,
    ServerSettings,
    _apply_env_overrides,
    _parse_yaml_to_settings_dict,
    discover_config_path,
    load_server_settings,
    parse_size,
    reload_hot_settings,
)

# ── parse_size ────────────────────────────────────────────────


def test_parse_size_bytes():
    assert parse_size("1024") == 1024


def test_parse_size_mb():
    assert parse_size("100MB") == 100 * 1024**2


def test_parse_size_gb():
    assert parse_size("2GB") == 2 * 1024**3


def test_parse_size_case_insensitive():
    assert parse_size("50mb") == 50 * 1024**2


def test_parse_size_short_suffix():
    assert parse_size("5G") == 5 * 1024**3


def test_parse_size_with_spaces():
    assert parse_size("  100 MB  ") == 100 * 1024**2


def test_parse_size_float():
    assert parse_size("1.5GB") == int(1.5 * 1024**3)


# ── _parse_yaml_to_settings_dict ──────────────────────────────


def test_parse_yaml_server_section():
    cfg = {"server": {"host": "1.2.3.4", "port": 9999, "workers": 4}}
    d = _parse_yaml_to_settings_dict(cfg)
    assert d["host"] == "1.2.3.4"
    assert d["port"] == 9999
    assert d["workers"] == 4


def test_parse_yaml_state_section():
    cfg = {"state": {"backend": "redis", "redis_url": "redis://r:6379/1", "path": "/var/lib/rv"}}
    d = _parse_yaml_to_settings_dict(cfg)
    assert d["state_backend"] == "redis"
    assert d["redis_url"] == "redis://r:6379/1"
    assert d["state_path"] == "/var/lib/rv"


def test_parse_yaml_auth_section():
    cfg = {"auth": {"enabled": False, "tokens": ["aaa", "bbb"], "admin_tokens": ["root"]}}
    d = _parse_yaml_to_settings_dict(cfg)
    assert d["auth_enabled"] is False
    assert d["auth_tokens"] == ["aaa", "bbb"]
    assert d["admin_tokens"] == ["root"]


def test_parse_yaml_quota_section_sizes():
    cfg = {
        "quota": {
            "default": "256GB",
            "grace": "1GB",
            "max_upload": 1073741824,
            "allowed_extensions": [".MP4", "mov"],
        }
    }
    d = _parse_yaml_to_settings_dict(cfg)
    assert d["default_quota_bytes"] == 256 * 1024**3
    assert d["grace_bytes"] == 1024**3
    assert d["max_upload_bytes"] == 1073741824
    assert d["allowed_extensions"] == ["mp4", "mov"]


def test_parse_yaml_storage_section_s3():
    cfg = {
        "storage": {
            "backend": "s3",
            "bucket": "vids",
            "thumbnail_bucket": "thumbs",
            "s3": {"region": "eu-west-1", "endpoint_url": "http://minio:9000"},
        }
    }
    d = _parse_yaml_to_settings_dict(cfg)
    assert d["object_store"] == "s3"
    assert d["bucket"] == "vids"
    assert d["thumbnail_bucket"] == "thumbs"
    assert d["s3_region"] == "eu-west-1"
    assert d["s3_endpoint_url"] == "http://minio:9000"


def test_parse_yaml_jobs_section():
    cfg = {"jobs": {"reconcile_interval": 600, "queue_max_receives": 3, "unknown": 1}}
    d = _parse_yaml_to_settings_dict(cfg)
    assert d == {"reconcile_interval": 600, "queue_max_receives": 3}


def test_parse_yaml_empty():
    assert _parse_yaml_to_settings_dict({}) == {}


# ── _apply_env_overrides ──────────────────────────────────────


def test_env_override_size_field(monkeypatch):
    monkeypatch.setenv("REELVAULT_DEFAULT_QUOTA_BYTES", "500MB")
    d: dict = {}
    _apply_env_overrides(d)
    assert d["default_quota_bytes"] == 500 * 1024**2


def test_env_override_tokens_json(monkeypatch):
    monkeypatch.setenv("REELVAULT_AUTH_TOKENS", '["t1","t2"]')
    d: dict = {}
    _apply_env_overrides(d)
    assert d["auth_tokens"] == ["t1", "t2"]


def test_env_override_tokens_csv(monkeypatch):
    monkeypatch.setenv("REELVAULT_AUTH_TOKENS", "t3, t4")
    d: dict = {}
    _apply_env_overrides(d)
    assert d["auth_tokens"] == ["t3", "t4"]


def test_env_override_not_set(monkeypatch):
    monkeypatch.delenv("REELVAULT_AUTH_TOKENS", raising=False)
    monkeypatch.delenv("REELVAULT_GRACE_BYTES", raising=False)
    d: dict = {"grace_bytes": 7}
    _apply_env_overrides(d)
    assert d == {"grace_bytes": 7}


# ── discover_config_path ──────────────────────────────────────


def test_discover_env_var(monkeypatch, tmp_path):
    cfg = tmp_path / "custom.yaml"
    cfg.write_text("server:\n  port: 1234\n")
    monkeypatch.setenv("REELVAULT_CONFIG", str(cfg))
    monkeypatch.chdir(tmp_path)
    assert discover_config_path() == cfg


def test_discover_cwd_config_yaml(monkeypatch, tmp_path):
    monkeypatch.delenv("REELVAULT_CONFIG", raising=False)
    (tmp_path / "config.yaml").write_text("server:\n  port: 2222\n")
    monkeypatch.chdir(tmp_path)
    result = discover_config_path()
    assert result is not None
    assert result.name == "config.yaml"


def test_discover_config_subfolder(monkeypatch, tmp_path):
    monkeypatch.delenv("REELVAULT_CONFIG", raising=False)
    sub = tmp_path / "config"
    sub.mkdir()
    (sub / "config.yaml").write_text("server:\n  port: 3333\n")
    monkeypatch.chdir(tmp_path)
    result = discover_config_path()
    assert result is not None
    assert str(result).endswith("config/config.yaml")


# ── load_server_settings ──────────────────────────────────────


def test_load_explicit_path(tmp_path):
    cfg = tmp_path / "test.yaml"
    cfg.write_text(textwrap.dedent("""\
        server:
          port: 7777
          workers: 2
        auth:
          enabled: false
          tokens:
            - "tok-abc"
        quota:
          default: 5GB
          grace: 100MB
        state:
          backend: memory
    """))
    settings = load_server_settings(cfg)
    assert settings.port == 7777
    assert settings.workers == 2
    assert settings.auth_enabled is False
    assert settings.auth_tokens == ["tok-abc"]
    assert settings.default_quota_bytes == 5 * 1024**3
    assert settings.grace_bytes == 100 * 1024**2
    assert settings.state_backend == "memory"
    assert getattr(settings, "_config_path", None) == cfg


def test_load_defaults_when_no_config(monkeypatch, tmp_path):
    monkeypatch.delenv("REELVAULT_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    settings = load_server_settings()
    assert settings.port == DEFAULT_SERVER_PORT
    assert settings.state_backend == "file"
    assert settings.object_store == "local"
    assert settings.allowed_extensions == ALLOWED_EXTENSIONS


def test_resolved_public_url():
    assert ServerSettings(host="0.0.0.0", port=9000).resolved_public_url() == "http://127.0.0.1:9000"
    assert ServerSettings(public_url="https://vault.example.com/").resolved_public_url() == "https://vault.example.com"


# ── reload_hot_settings ───────────────────────────────────────


def test_reload_no_changes(tmp_path):
    cfg = tmp_path / "reload_test.yaml"
    cfg.write_text("auth:\n  tokens:\n    - aaa\n")
    settings = load_server_settings(cfg)
    assert reload_hot_settings(settings) == {}


def test_reload_detects_token_change(tmp_path):
    cfg = tmp_path / "reload_test.yaml"
    cfg.write_text("auth:\n  tokens:\n    - token-v1\n")
    settings = load_server_settings(cfg)

    cfg.write_text("auth:\n  tokens:\n    - token-v2\n    - token-v3\n")
    changes = reload_hot_settings(settings)
    assert changes["auth_tokens"] == (["token-v1"], ["token-v2", "token-v3"])
    assert settings.auth_tokens == ["token-v2", "token-v3"]


def test_reload_ignores_static_fields(tmp_path):
    cfg = tmp_path / "reload_test.yaml"
    cfg.write_text("server:\n  port: 1000\nquota:\n  grace: 1MB\n")
    settings = load_server_settings(cfg)

    cfg.write_text("server:\n  port: 2000\nquota:\n  grace: 2MB\n")
    changes = reload_hot_settings(settings)
    assert set(changes) == {"grace_bytes"}
    assert settings.port == 1000
    assert settings.grace_bytes == 2 * 1024**2


def test_hot_reloadable_fields_exist_on_settings():
    for name in HOT_RELOADABLE_FIELDS:
        assert name in ServerSettings.model_fields
