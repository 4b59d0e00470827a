"""Tests for collector_config.yaml loading and validation."""

from __future__ import annotations

import copy
import textwrap
from pathlib import Path

import pytest

from src.healthsync.base import WORKOUT_TYPE_ID
from src.healthsync.config_loader import (
    CollectorConfig,
    config_from_mapping,
    get_collector_config,
    load_collector_config,
    reload_collector_config,
)
from src.healthsync.errors import ConfigValidationError
from src.healthsync.tests.conftest import HEART_RATE, SLEEP, STEPS


class TestConfigLoading:
    """Tests for the bundled collector config."""

    def test_load_default_config(self, collector_config: CollectorConfig) -> None:
        assert collector_config.version == "1.0"
        assert collector_config.collector_id == "healthkit"
        assert collector_config.initial_lookback_days == 7
        assert collector_config.throttle_seconds == 300

    def test_streams(self, collector_config: CollectorConfig) -> None:
        assert collector_config.samples_stream.key == "healthkit"
        assert collector_config.samples_stream.prefix == "imports/fitness/apple-health/raw"
        assert collector_config.workouts_stream.key == "healthkit.workouts"
        assert collector_config.workouts_stream.prefix == "imports/fitness/apple-health"

    def test_upload_policy(self, collector_config: CollectorConfig) -> None:
        upload = collector_config.upload
        assert upload.max_attempts >= 1
        assert 0 < upload.backoff_base_seconds <= upload.backoff_cap_seconds

    def test_sleep_categories_share_one_type(self, collector_config: CollectorConfig) -> None:
        """Several toggles can cover the same type; it is queried once."""
        types = collector_config.source_types(
            {"sleep_duration", "sleep_stages", "bedtime", "sleep_consistency"}
        )
        assert types == {SLEEP}

    def test_workouts_split_from_samples(self, collector_config: CollectorConfig) -> None:
        enabled = {"steps", "running"}
        assert collector_config.sample_types(enabled) == {STEPS}
        assert collector_config.includes_workouts(enabled)
        assert not collector_config.includes_workouts({"steps"})
        assert WORKOUT_TYPE_ID in collector_config.source_types(enabled)

    def test_unknown_category_contributes_nothing(self, collector_config: CollectorConfig) -> None:
        assert collector_config.source_types({"telepathy"}) == set()
        assert collector_config.source_types({"mood"}) == set()

    def test_preferred_units(self, collector_config: CollectorConfig) -> None:
        assert collector_config.preferred_unit(HEART_RATE) == "count/min"
        assert collector_config.preferred_unit("HKQuantityTypeIdentifierSomethingNew") == "count"
        assert not collector_config.has_preferred_unit("HKQuantityTypeIdentifierSomethingNew")


class TestConfigValidation:
    def test_empty_mapping_lists_every_problem(self) -> None:
        with pytest.raises(ConfigValidationError) as exc_info:
            config_from_mapping({})
        message = str(exc_info.value)
        assert "streams.samples" in message
        assert "streams.workouts" in message
        assert "'categories'" in message

    def test_stream_keys_must_differ(self, collector_config: CollectorConfig) -> None:
        raw = copy.deepcopy(collector_config._raw)
        raw["streams"]["workouts"]["key"] = raw["streams"]["samples"]["key"]
        with pytest.raises(ConfigValidationError, match="must differ"):
            config_from_mapping(raw)

    def test_negative_lookback(self, collector_config: CollectorConfig) -> None:
        raw = copy.deepcopy(collector_config._raw)
        raw["collector"]["initial_lookback_days"] = -1
        with pytest.raises(ConfigValidationError, match="initial_lookback_days"):
            config_from_mapping(raw)

    def test_bad_unit(self, collector_config: CollectorConfig) -> None:
        raw = copy.deepcopy(collector_config._raw)
        raw["preferred_units"][STEPS] = ""
        with pytest.raises(ConfigValidationError, match="preferred_units"):
            config_from_mapping(raw)

    def test_category_must_be_list(self, collector_config: CollectorConfig) -> None:
        raw = copy.deepcopy(collector_config._raw)
        raw["categories"]["steps"] = STEPS
        with pytest.raises(ConfigValidationError, match="categories.steps"):
            config_from_mapping(raw)

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("categories: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_collector_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_collector_config(tmp_path / "absent.yaml")


class TestReload:
    @pytest.fixture(autouse=True)
    def restore_singleton(self):
        yield
        reload_collector_config()

    def test_reload_replaces_singleton(self, tmp_path: Path) -> None:
        path = tmp_path / "collector_config.yaml"
        path.write_text(textwrap.dedent("""\
            version: "2.0"
            collector:
              throttle_seconds: 60
            streams:
              samples: {key: samples, prefix: raw/samples}
              workouts: {key: workouts, prefix: raw/workouts}
            categories:
              steps: [HKQuantityTypeIdentifierStepCount]
        """))

        reloaded = reload_collector_config(path)

        assert get_collector_config() is reloaded
        assert reloaded.version == "2.0"
        assert reloaded.throttle_seconds == 60
        assert reloaded.initial_lookback_days == 7

    def test_invalid_reload_keeps_old_config(self, tmp_path: Path) -> None:
        before = get_collector_config()
        path = tmp_path / "collector_config.yaml"
        path.write_text("version: '3.0'\n")
        with pytest.raises(ConfigValidationError):
            reload_collector_config(path)
        assert get_collector_config() is before
