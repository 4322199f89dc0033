"""Tests for kestrel.settings and kestrel.logging_config."""

import logging
from pathlib import Path

import pytest
import yaml

from kestrel import settings as settings_mod
from kestrel.logging_config import setup_logging


class TestLoadSettings:
    """YAML over defaults."""

    def test_defaults_when_file_missing(self, tmp_path: Path) -> None:
        s = settings_mod.load_settings(tmp_path)
        assert s["invoker"]["default_timeout"] == 300
        assert s["extensions"]["memory"]["transport_kind"] == "builtin"

    def test_file_values_deep_merge(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text(
            yaml.safe_dump(
                {
                    "invoker": {"default_timeout": 60},
                    "extensions": {"web": {"transport_kind": "subprocess", "command": "web-tool"}},
                }
            ),
            encoding="utf-8",
        )
        s = settings_mod.load_settings(tmp_path)
        assert s["invoker"]["default_timeout"] == 60
        assert s["invoker"]["cancel_grace_seconds"] == 5.0
        assert set(s["extensions"]) == {"memory", "platform", "web"}

    def test_invalid_yaml_falls_back_to_defaults(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        (tmp_path / "settings.yaml").write_text("invoker: [unclosed", encoding="utf-8")
        with caplog.at_level(logging.WARNING, logger="kestrel.settings"):
            s = settings_mod.load_settings(tmp_path)
        assert s["invoker"]["default_timeout"] == 300
        assert "Ignoring" in caplog.text

    def test_non_mapping_file_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text("- just\n- a list\n", encoding="utf-8")
        assert settings_mod.load_settings(tmp_path)["data_dir"] == "data"

    def test_non_positive_timeouts_use_defaults(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        (tmp_path / "settings.yaml").write_text(
            yaml.safe_dump(
                {
                    "invoker": {"default_timeout": 0, "cancel_grace_seconds": "soon"},
                    "transports": {"connect_timeout": 2.5, "close_grace_seconds": True},
                }
            ),
            encoding="utf-8",
        )
        with caplog.at_level(logging.WARNING, logger="kestrel.settings"):
            s = settings_mod.load_settings(tmp_path)
        assert s["invoker"] == {"default_timeout": 300, "cancel_grace_seconds": 5.0}
        assert s["transports"] == {"connect_timeout": 2.5, "close_grace_seconds": 5.0}
        assert "invoker.default_timeout" in caplog.text

    def test_config_dir_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (tmp_path / "settings.yaml").write_text("data_dir: elsewhere\n", encoding="utf-8")
        monkeypatch.setenv("KESTREL_CONFIG_DIR", str(tmp_path))
        assert settings_mod.config_dir() == tmp_path
        assert settings_mod.load_settings()["data_dir"] == "elsewhere"

    def test_each_load_reads_the_file(self, tmp_path: Path) -> None:
        assert settings_mod.load_settings(tmp_path)["data_dir"] == "data"
        (tmp_path / "settings.yaml").write_text("data_dir: elsewhere\n", encoding="utf-8")
        assert settings_mod.load_settings(tmp_path)["data_dir"] == "elsewhere"

    def test_defaults_are_not_shared(self) -> None:
        a = settings_mod.get_default_settings()
        a["invoker"]["default_timeout"] = 1
        a["extensions"]["memory"]["display_name"] = "x"
        fresh = settings_mod.get_default_settings()
        assert fresh["invoker"]["default_timeout"] == 300
        assert fresh["extensions"]["memory"]["display_name"] == "Memory"


def test_get_setting_dot_path() -> None:
    s = {"transports": {"connect_timeout": 12}}
    assert settings_mod.get_setting(s, "transports.connect_timeout") == 12
    assert settings_mod.get_setting(s, "transports.missing", "x") == "x"
    assert settings_mod.get_setting(s, "transports.connect_timeout.deeper", 0) == 0


def test_setup_logging_file_and_overrides(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging(
            tmp_path,
            {
                "logging": {
                    "file": "logs/kestrel.log",
                    "level": "warning",
                    "levels": {"kestrel.extensions.invoker": "DEBUG"},
                }
            },
        )
        assert (tmp_path / "logs").is_dir()
        assert root.level == logging.WARNING
        assert logging.getLogger("kestrel.extensions.invoker").level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert len(root.handlers) == 1
    finally:
        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        logging.getLogger("kestrel.extensions.invoker").setLevel(logging.NOTSET)
