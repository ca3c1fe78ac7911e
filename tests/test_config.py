from datetime import datetime, timezone

import pytest

from einvoice_queue.config import DEFAULT_CONFIG, QueueSettings, validate_config_value
from einvoice_queue.db import connect_db, init_db
from einvoice_queue.repository import get_config, set_config
from einvoice_queue.utils import (
    from_iso, is_business_hours, next_business_open, parse_delay_to_seconds, to_iso,
)


def test_init_db_seeds_defaults(db_path):
    init_db(db_path)
    conn = connect_db(db_path)
    try:
        assert get_config(conn) == DEFAULT_CONFIG
    finally:
        conn.close()


def test_set_config_normalizes_and_validates(db_path):
    init_db(db_path)
    conn = connect_db(db_path)
    try:
        assert set_config(conn, "dead_letter_enabled", "No") == "false"
        assert set_config(conn, "log_level", "debug") == "DEBUG"
        with pytest.raises(ValueError):
            set_config(conn, "concurrency", "0")
        with pytest.raises(ValueError):
            set_config(conn, "backoff_base", "2")
        settings = QueueSettings.from_config(get_config(conn))
    finally:
        conn.close()
    assert settings.dead_letter_enabled is False
    assert settings.log_level == "DEBUG"
    assert settings.concurrency == 3


@pytest.mark.parametrize("key,value,expected", [
    ("concurrency", "5", "5"),
    ("poll_interval_seconds", "0.5", "0.5"),
    ("cancel_check_interval_seconds", "0.25", "0.25"),
    ("retention_days", "30", "30"),
    ("dead_letter_enabled", "yes", "true"),
])
def test_validate_config_value(key, value, expected):
    assert validate_config_value(key, value) == expected


def test_settings_defaults_match_config_defaults():
    assert QueueSettings.from_config({}) == QueueSettings()


@pytest.mark.parametrize("text,seconds", [
    ("20s", 20), ("5m", 300), ("1h30m", 5400), ("2d3h", 183600), ("  90m ", 5400),
])
def test_parse_delay(text, seconds):
    assert parse_delay_to_seconds(text) == seconds


@pytest.mark.parametrize("text", ["", "0s", "soon", "5x"])
def test_parse_delay_rejects(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)


def test_iso_round_trip_keeps_microseconds():
    dt = datetime(2026, 3, 2, 1, 2, 3, 400, tzinfo=timezone.utc)
    assert to_iso(dt) == "2026-03-02T01:02:03.000400Z"
    assert from_iso(to_iso(dt)) == dt


def test_business_hours_in_malaysia():
    # 08:59 and 18:00 MYT on a Monday are outside, 09:00 inside
    assert not is_business_hours(datetime(2026, 3, 2, 0, 59, tzinfo=timezone.utc))
    assert is_business_hours(datetime(2026, 3, 2, 1, 0, tzinfo=timezone.utc))
    assert not is_business_hours(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
    # Saturday noon
    assert not is_business_hours(datetime(2026, 3, 7, 4, 0, tzinfo=timezone.utc))


def test_next_business_open_skips_weekend():
    friday_evening = datetime(2026, 3, 6, 11, 0, tzinfo=timezone.utc)
    assert next_business_open(friday_evening) == datetime(2026, 3, 9, 1, 0, tzinfo=timezone.utc)
