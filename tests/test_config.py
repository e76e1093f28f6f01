"""Tests for config.py environment variable parsing helpers."""

import logging
import os
from unittest import mock


class TestGetIntEnv:
    """Tests for get_int_env helper function."""

    def test_returns_default_when_env_not_set(self):
        """Should return default value when environment variable is not set."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("NONEXISTENT_VAR", 42) == 42

    def test_parses_valid_integer(self):
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "123"}):
            assert get_int_env("TEST_INT", 0) == 123

    def test_returns_default_on_invalid_value(self, caplog):
        """Should return default and log warning when value is not a valid integer."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "abc"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 42) == 42
                assert "Invalid TEST_INT='abc'" in caplog.text

    def test_range_validation(self, caplog):
        """Out-of-range values fall back to the default."""
        from config import get_int_env

        with mock.patch.dict(os.environ, {"TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("TEST_INT", 5, min_val=1) == 5
                assert "below minimum" in caplog.text
        with mock.patch.dict(os.environ, {"TEST_INT": "100"}):
            assert get_int_env("TEST_INT", 5, max_val=10) == 5


class TestGetFloatEnv:
    def test_parses_and_rejects(self):
        from config import get_float_env

        with mock.patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 2.5
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "nan"}):
            assert get_float_env("TEST_FLOAT", 1.0) == 1.0
        with mock.patch.dict(os.environ, {"TEST_FLOAT": "0.01"}):
            assert get_float_env("TEST_FLOAT", 1.0, min_val=0.1) == 1.0


class TestParseTargetHeights:
    """Tests for the rendition height list."""

    def test_sorted_and_deduplicated(self):
        from config import parse_target_heights

        assert parse_target_heights("720, 360,720", [360]) == [360, 720]

    def test_accepts_p_suffix(self):
        from config import parse_target_heights

        assert parse_target_heights("1080p,480P", [360]) == [480, 1080]

    def test_invalid_entry_falls_back(self, caplog):
        from config import parse_target_heights

        with caplog.at_level(logging.WARNING):
            assert parse_target_heights("360,abc", [360]) == [360]
            assert "Invalid target height 'abc'" in caplog.text

    def test_odd_or_out_of_range_heights_fall_back(self):
        from config import parse_target_heights

        assert parse_target_heights("361", [360]) == [360]
        assert parse_target_heights("0", [360]) == [360]
        assert parse_target_heights("8640", [360]) == [360]

    def test_empty_value_uses_default(self):
        from config import parse_target_heights

        assert parse_target_heights(" , ", [240]) == [240]

    def test_default_is_copied(self):
        from config import parse_target_heights

        default = [360]
        result = parse_target_heights("", default)
        result.append(720)
        assert default == [360]


class TestDefaults:
    def test_reprocess_policy_is_known(self):
        from api.enums import ReprocessPolicy
        from config import REPROCESS_POLICY

        assert ReprocessPolicy(REPROCESS_POLICY) in ReprocessPolicy

    def test_buckets_differ(self):
        from config import PROCESSED_BUCKET, RAW_BUCKET

        assert RAW_BUCKET != PROCESSED_BUCKET

    def test_redelivery_delay_exceeds_push_timeout(self):
        from config import PUSH_REDELIVERY_DELAY_MS, PUSH_TIMEOUT

        assert PUSH_REDELIVERY_DELAY_MS > PUSH_TIMEOUT * 1000
