#!/usr/bin/env python3
"""
Test script for configuration loading and validation.

Usage:
    python3 scripts/test_config.py
"""

import os
import tempfile
from pathlib import Path

from harness import run_tests

from medreminder.config import DEFAULT_CONFIG_PATH, Config, load_config
from medreminder.errors import ConfigurationError


VALID_KEY = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.payload.sig"


def _expect_invalid(data):
    try:
        Config(data).validate()
    except ConfigurationError:
        return
    raise AssertionError(f"{data!r} should not validate")


def test_dotted_get_and_default():
    config = Config({"sync": {"max_retries": 5}})
    assert config.get("sync.max_retries") == 5
    assert config.get("sync.base_delay_seconds", 2.0) == 2.0
    assert config.get("missing.section.key") is None


def test_set_creates_sections():
    config = Config()
    config.set("notifications.snooze_minutes", 10)
    assert config.get("notifications.snooze_minutes") == 10


def test_shipped_config_loads():
    config = load_config(DEFAULT_CONFIG_PATH)
    assert config.get("occurrences.horizon_days") == 30
    assert config.get("notifications.snooze_minutes") == 15
    assert config.get("sync.max_retries") == 3


def test_yaml_file_roundtrip():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "settings.yaml"
        path.write_text("remote:\n  url: https://x.supabase.co\n  key: eyJabc\n")
        config = Config.from_file(path)
        assert config.get("remote.url") == "https://x.supabase.co"
        config.validate()


def test_missing_file_is_empty_config():
    config = Config.from_file("/nonexistent/medreminder.yaml")
    assert config.get("sync.max_retries", 3) == 3


def test_validation_rules():
    Config({"remote": {"url": "https://x.supabase.co", "key": VALID_KEY}}).validate()
    _expect_invalid({})
    _expect_invalid({"remote": {"url": "http://x.supabase.co", "key": VALID_KEY}})
    _expect_invalid({"remote": {"url": "https://x.supabase.co", "key": ""}})
    _expect_invalid({"remote": {"url": "https://x.supabase.co", "key": "not-a-jwt"}})


def test_environment_overrides_file():
    config = Config({"remote": {"url": "https://file.supabase.co"}})
    old = os.environ.get("MEDREMINDER_SUPABASE_URL")
    os.environ["MEDREMINDER_SUPABASE_URL"] = "https://env.supabase.co"
    try:
        assert config.get("remote.url") == "https://env.supabase.co"
    finally:
        if old is None:
            del os.environ["MEDREMINDER_SUPABASE_URL"]
        else:
            os.environ["MEDREMINDER_SUPABASE_URL"] = old


def main():
    run_tests(globals(), "TEST: Configuration")


if __name__ == "__main__":
    main()
