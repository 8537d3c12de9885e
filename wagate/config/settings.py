"""Unified config: server, channels, backoff, browser and session sections.

Defaults: loaded from config/config.yaml.example; each accessor also carries in-code fallbacks so a
bare install (no example file next to the package) still runs. Environment variables override YAML.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

# Lazy-loaded example config (defaults for missing keys)
_EXAMPLE_CONFIG: Optional[Dict[str, Any]] = None

# Executable overrides, most specific first
EXECUTABLE_ENV_VARS = ("CHROME_BIN", "PUPPETEER_EXECUTABLE_PATH", "GOOGLE_CHROME_BIN")
CACHE_DIR_ENV_VARS = ("PLAYWRIGHT_BROWSERS_PATH", "PUPPETEER_CACHE_DIR")


def _load_example_config() -> Dict[str, Any]:
    """Load config.yaml.example as defaults. Empty dict when the file is not shipped."""
    global _EXAMPLE_CONFIG
    if _EXAMPLE_CONFIG is None:
        path = _PROJECT_ROOT / "config" / "config.yaml.example"
        if path.exists():
            with open(path, encoding="utf-8") as f:
                _EXAMPLE_CONFIG = yaml.safe_load(f) or {}
        else:
            _EXAMPLE_CONFIG = {}
    return _EXAMPLE_CONFIG


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into base. Override values take precedence."""
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _merged_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Merge config with example so missing keys come from the example file."""
    return _deep_merge(_load_example_config(), cfg)


def _section(cfg: Dict[str, Any], section: str) -> Dict[str, Any]:
    value = cfg.get(section)
    return dict(value) if isinstance(value, dict) else {}


def _env(name: str, environ: Optional[Dict[str, str]] = None) -> Optional[str]:
    env = os.environ if environ is None else environ
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def read_config(config_path: Optional[str] = None) -> tuple[dict, str]:
    """Load YAML config. Returns (config, resolved_path); resolved_path is "" when no file exists."""
    config_path = config_path or os.environ.get("WAGATE_CONFIG", "config/config.yaml")
    path = Path(config_path)
    if not path.is_absolute():
        path = _PROJECT_ROOT / path
    if not path.exists():
        path = _PROJECT_ROOT / "config" / "config.yaml.example"
    if not path.exists():
        return {}, ""
    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    return config, str(path.resolve())


def get_server_config(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Return server config (host, port, api_token, cors_origins). PORT/HOST/API_TOKEN override YAML."""
    merged = _merged_config(config or {})
    s = _section(merged, "server")
    port = _env("PORT", environ) or s.get("port") or 3000
    return {
        "host": _env("HOST", environ) or s.get("host") or "0.0.0.0",
        "port": int(port),
        "api_token": _env("API_TOKEN", environ) or (s.get("api_token") or None),
        "cors_origins": list(s.get("cors_origins") or ["*"]),
    }


def get_channels_config(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Return channel config. default channel falls back to the server port (the historical channel id)."""
    merged = _merged_config(config or {})
    c = _section(merged, "channels")
    default = c.get("default")
    if default is None or str(default).strip() == "":
        default = get_server_config(config, environ)["port"]
    eager_env = _env("WAGATE_EAGER_CHANNELS", environ)
    if eager_env is not None:
        eager: List[str] = [p.strip() for p in eager_env.split(",") if p.strip()]
    else:
        eager = [str(x) for x in (c.get("eager") or [])]
    return {
        "default": str(default),
        "eager": eager,
        "qr_wait_ms": int(c.get("qr_wait_ms", 10000)),
        "qr_poll_interval_ms": int(c.get("qr_poll_interval_ms", 1000)),
        "status_refresh_timeout_sec": float(c.get("status_refresh_timeout_sec", 5.0)),
    }


def get_backoff_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return reconnect backoff parameters (base_delay_ms, multiplier, cap_delay_ms, max_retries)."""
    merged = _merged_config(config or {})
    b = _section(merged, "backoff")
    return {
        "base_delay_ms": int(b.get("base_delay_ms", 5000)),
        "multiplier": float(b.get("multiplier", 2.0)),
        "cap_delay_ms": int(b.get("cap_delay_ms", 120000)),
        "max_retries": int(b.get("max_retries", 5)),
    }


def get_browser_config(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Return browser launch config.

    executable_overrides: values of CHROME_BIN, PUPPETEER_EXECUTABLE_PATH, GOOGLE_CHROME_BIN (in that order)
    followed by browser.executable_path. cache_dirs: PLAYWRIGHT_BROWSERS_PATH, PUPPETEER_CACHE_DIR, browser.cache_dir.
    """
    merged = _merged_config(config or {})
    b = _section(merged, "browser")
    overrides = [v for v in (_env(name, environ) for name in EXECUTABLE_ENV_VARS) if v]
    if b.get("executable_path"):
        overrides.append(str(b["executable_path"]))
    cache_dirs = [v for v in (_env(name, environ) for name in CACHE_DIR_ENV_VARS) if v]
    if b.get("cache_dir"):
        cache_dirs.append(str(b["cache_dir"]))
    return {
        "headless": bool(b.get("headless", True)),
        "args": list(b.get("args") or ["--no-sandbox", "--disable-dev-shm-usage"]),
        "executable_overrides": overrides,
        "cache_dirs": cache_dirs,
        "launch_timeout_ms": int(b.get("launch_timeout_ms", 120000)),
        "navigation_timeout_ms": int(b.get("navigation_timeout_ms", 120000)),
        "watch_interval_sec": float(b.get("watch_interval_sec", 1.0)),
        "send_timeout_ms": int(b.get("send_timeout_ms", 60000)),
    }


def get_session_config(
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Return session persistence config. data_dir is resolved against the project root when relative."""
    merged = _merged_config(config or {})
    s = _section(merged, "session")
    data_dir = Path(_env("WAGATE_SESSION_DIR", environ) or s.get("data_dir") or ".wagate_auth")
    if not data_dir.is_absolute():
        data_dir = _PROJECT_ROOT / data_dir
    return {"data_dir": str(data_dir)}
