from dataclasses import dataclass
from datetime import datetime, timezone
import json

from newsharvest.models import JobState
from newsharvest.utils import domain_from_url, extract_published_at, json_dumps, parse_date_value


@dataclass
class _Point:
    x: int
    y: int


def test_json_dumps_handles_domain_values():
    payload = {
        "state": JobState.QUEUED,
        "when": datetime(2025, 6, 10, 4, 0, tzinfo=timezone.utc),
        "point": _Point(1, 2),
        "tags": {"b", "a"},
        "pair": (1, 2),
    }

    decoded = json.loads(json_dumps(payload))

    assert decoded == {
        "pair": [1, 2],
        "point": {"x": 1, "y": 2},
        "state": "queued",
        "tags": ["a", "b"],
        "when": "2025-06-10T04:00:00+00:00",
    }


def test_domain_from_url_strips_www_port_and_credentials():
    assert domain_from_url("https://www.DF.cl/economia/x") == "df.cl"
    assert domain_from_url("http://user:pw@news.example.com:8080/a") == "news.example.com"
    assert domain_from_url(None) == ""


def test_published_at_prefers_published_then_updated():
    entry = {
        "published": "Tue, 10 Jun 2025 04:00:00 GMT",
        "updated": "2025-06-11T00:00:00+00:00",
    }
    assert extract_published_at(entry) == "2025-06-10T04:00:00+00:00"
    assert extract_published_at({"updated": "2025-06-11T00:00:00+00:00"}) == (
        "2025-06-11T00:00:00+00:00"
    )
    assert extract_published_at({"dc_date": "not a date"}) is None


def test_parse_date_value_assumes_utc_for_naive_values():
    parsed = parse_date_value(datetime(2025, 1, 2, 3, 4))
    assert parsed.tzinfo == timezone.utc
    assert parse_date_value(12345) is None
