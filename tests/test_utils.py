from datetime import datetime, timedelta, timezone

import pytest

from leadctl.utils import parse_delay_to_seconds, parse_iso, to_iso


@pytest.mark.parametrize("text,seconds", [
    ("20s", 20), ("5m", 300), ("1h30m", 5400), ("2d3h", 183600), ("  2h  ", 7200),
])
def test_parse_delay(text, seconds):
    assert parse_delay_to_seconds(text) == seconds


@pytest.mark.parametrize("text", ["", "soon", "0s", "5x"])
def test_parse_delay_rejects(text):
    with pytest.raises(ValueError):
        parse_delay_to_seconds(text)


def test_iso_timestamps_sort_chronologically():
    base = datetime(2025, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc)
    stamps = [to_iso(base + timedelta(microseconds=n)) for n in (0, 1, 10**6, 10**7)]
    assert stamps == sorted(stamps)
    assert parse_iso(stamps[0]) == base
    assert stamps[0].endswith("Z")
