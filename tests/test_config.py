import os
from unittest.mock import patch

from cliptrail.config import _parse_bool, _parse_int, _parse_log_level


class TestParseInt:
    def test_default_when_not_set(self):
        env = os.environ.copy()
        env.pop("CLIPTRAIL_MAX_ENTRIES", None)
        with patch.dict("os.environ", env, clear=True):
            assert _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000) == 1000

    def test_valid_value(self):
        with patch.dict("os.environ", {"CLIPTRAIL_MAX_ENTRIES": "250"}):
            assert _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000) == 250

    def test_clamped_below_minimum(self):
        with patch.dict("os.environ", {"CLIPTRAIL_MAX_ENTRIES": "0"}):
            assert _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000) == 1

    def test_clamped_above_maximum(self):
        with patch.dict("os.environ", {"CLIPTRAIL_MAX_ENTRIES": "999999"}):
            assert _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000) == 100_000

    def test_invalid_non_integer(self):
        with patch.dict("os.environ", {"CLIPTRAIL_MAX_ENTRIES": "abc"}):
            assert _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000) == 1000


class TestParseBool:
    def test_truthy(self):
        for raw in ("1", "true", "YES", " on "):
            with patch.dict("os.environ", {"CLIPTRAIL_AUTO_PRUNE": raw}):
                assert _parse_bool("CLIPTRAIL_AUTO_PRUNE", False) is True

    def test_falsy(self):
        for raw in ("0", "false", "No", "off"):
            with patch.dict("os.environ", {"CLIPTRAIL_AUTO_PRUNE": raw}):
                assert _parse_bool("CLIPTRAIL_AUTO_PRUNE", True) is False

    def test_unrecognized_uses_default(self):
        with patch.dict("os.environ", {"CLIPTRAIL_AUTO_PRUNE": "maybe"}):
            assert _parse_bool("CLIPTRAIL_AUTO_PRUNE", True) is True


class TestParseLogLevel:
    def test_default(self):
        env = os.environ.copy()
        env.pop("CLIPTRAIL_LOG_LEVEL", None)
        with patch.dict("os.environ", env, clear=True):
            assert _parse_log_level() == "INFO"

    def test_case_insensitive(self):
        with patch.dict("os.environ", {"CLIPTRAIL_LOG_LEVEL": "debug"}):
            assert _parse_log_level() == "DEBUG"

    def test_unknown_level(self):
        with patch.dict("os.environ", {"CLIPTRAIL_LOG_LEVEL": "verbose"}):
            assert _parse_log_level() == "INFO"
