"""Tests for timestamp and JSON helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from chatloom.utils.json_utils import clean_json_response, iter_json_lines, parse_json_lines, to_json_lines
from chatloom.utils.timestamp_utils import (format_absolute, format_relative, midpoint, round_to_granularity,
                                            to_datetime, to_iso)

NOON = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestTimestamps:

    @pytest.mark.parametrize('minute, expected', [(7, 0), (8, 15), (22, 15), (53, 60)])
    def test_round_to_quarter_hour(self, minute, expected):
        rounded = round_to_granularity(NOON + timedelta(minutes=minute), 15)
        assert rounded == NOON + timedelta(minutes=expected)

    def test_midpoint(self):
        assert midpoint(NOON, NOON + timedelta(hours=2)) == NOON + timedelta(hours=1)

    def test_to_datetime_accepts_stored_forms(self):
        assert to_datetime('2024-05-01T12:00:00Z') == NOON
        assert to_datetime(NOON.timestamp()) == NOON
        assert to_datetime(datetime(2024, 5, 1, 12, 0)) == NOON
        assert to_datetime(to_iso(NOON)) == NOON

    def test_formatting(self):
        assert format_absolute(NOON) == '2024-05-01 12:00'
        assert format_relative(NOON, NOON + timedelta(seconds=20)) == 'just now'
        assert format_relative(NOON, NOON + timedelta(minutes=1)) == '1 minute ago'
        assert format_relative(NOON, NOON + timedelta(days=3, hours=5)) == '3 days ago'


class TestJson:

    def test_clean_fenced_response(self):
        assert clean_json_response('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert clean_json_response('  {"a": 1} ') == '{"a": 1}'

    def test_json_lines(self):
        payload = to_json_lines([{'a': 1}, {'b': 'ü'}]) + '\n\nbroken\n'

        lines = list(iter_json_lines(payload))

        assert [(number, obj) for number, obj, error in lines if not error] == [(1, {'a': 1}), (2, {'b': 'ü'})]
        assert lines[-1][0] == 4 and lines[-1][1] is None and lines[-1][2]
        assert parse_json_lines(payload) == [{'a': 1}, {'b': 'ü'}]
