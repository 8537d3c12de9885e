"""Tests for config/settings: YAML sections, example-file defaults, environment overrides."""

from pathlib import Path

from wagate.config.settings import (
    get_backoff_config,
    get_browser_config,
    get_channels_config,
    get_server_config,
    get_session_config,
    read_config,
)


class TestServerConfig:
    def test_defaults_from_example(self):
        out = get_server_config({}, environ={})
        assert out["host"] == "0.0.0.0"
        assert out["port"] == 3000
        assert out["api_token"] is None
        assert out["cors_origins"] == ["*"]

    def test_yaml_values(self):
        out = get_server_config({"server": {"port": 3005, "api_token": "s3cret"}}, environ={})
        assert out["port"] == 3005
        assert out["api_token"] == "s3cret"

    def test_env_overrides_yaml(self):
        out = get_server_config({"server": {"port": 3005}}, environ={"PORT": "8080", "API_TOKEN": "tok", "HOST": "127.0.0.1"})
        assert out["port"] == 8080
        assert out["api_token"] == "tok"
        assert out["host"] == "127.0.0.1"

    def test_blank_env_ignored(self):
        out = get_server_config({"server": {"port": 3005}}, environ={"PORT": "  "})
        assert out["port"] == 3005


class TestChannelsConfig:
    def test_default_channel_is_server_port(self):
        out = get_channels_config({"server": {"port": 3002}}, environ={})
        assert out["default"] == "3002"
        assert out["eager"] == []
        assert out["qr_wait_ms"] == 10000
        assert out["qr_poll_interval_ms"] == 1000

    def test_explicit_default_and_eager(self):
        out = get_channels_config({"channels": {"default": 4000, "eager": [4000, 4001]}}, environ={})
        assert out["default"] == "4000"
        assert out["eager"] == ["4000", "4001"]

    def test_eager_from_env(self):
        out = get_channels_config({}, environ={"WAGATE_EAGER_CHANNELS": "3000, 3001,,"})
        assert out["eager"] == ["3000", "3001"]


class TestBackoffConfig:
    def test_defaults(self):
        assert get_backoff_config({}) == {
            "base_delay_ms": 5000,
            "multiplier": 2.0,
            "cap_delay_ms": 120000,
            "max_retries": 5,
        }

    def test_partial_override_keeps_other_keys(self):
        out = get_backoff_config({"backoff": {"max_retries": 2}})
        assert out["max_retries"] == 2
        assert out["base_delay_ms"] == 5000


class TestBrowserConfig:
    def test_env_overrides_come_first(self):
        out = get_browser_config(
            {"browser": {"executable_path": "/opt/chrome/chrome"}},
            environ={"GOOGLE_CHROME_BIN": "/app/.apt/usr/bin/google-chrome", "CHROME_BIN": "/usr/bin/chromium"},
        )
        assert out["executable_overrides"] == [
            "/usr/bin/chromium",
            "/app/.apt/usr/bin/google-chrome",
            "/opt/chrome/chrome",
        ]

    def test_cache_dirs_and_args(self):
        out = get_browser_config({"browser": {"cache_dir": "/cache"}}, environ={"PUPPETEER_CACHE_DIR": "/pptr"})
        assert out["cache_dirs"] == ["/pptr", "/cache"]
        assert "--no-sandbox" in out["args"]
        assert out["headless"] is True


class TestSessionConfig:
    def test_relative_dir_resolved_against_project_root(self, project_root: Path):
        out = get_session_config({"session": {"data_dir": ".auth"}}, environ={})
        assert out["data_dir"] == str(project_root / ".auth")

    def test_env_override(self, tmp_path: Path):
        out = get_session_config({}, environ={"WAGATE_SESSION_DIR": str(tmp_path)})
        assert out["data_dir"] == str(tmp_path)


class TestReadConfig:
    def test_reads_given_file(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("server:\n  port: 3999\n", encoding="utf-8")
        config, resolved = read_config(str(path))
        assert config["server"]["port"] == 3999
        assert resolved == str(path.resolve())

    def test_missing_file_falls_back_to_example(self, tmp_path: Path, example_config: dict):
        config, resolved = read_config(str(tmp_path / "nope.yaml"))
        assert resolved.endswith("config.yaml.example")
        assert config == example_config
