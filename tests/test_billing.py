"""
Unit tests for billing calculations.

Tests OS detection, duration rounding, aggregation invariants and cost math.
"""
import json
import random

import pytest

from gh_forecast.domain.billing import (
    MULTIPLIERS,
    aggregate_billing,
    calculate_billable_minutes,
    calculate_duration_minutes,
    detect_os,
    estimate_cost,
    get_multiplier,
    group_by_period,
    parse_label_mappings,
    process_job,
    project_costs,
)
from gh_forecast.domain.errors import ConfigurationError
from gh_forecast.domain.models import LabelMapping, OSType, UsageBucket


class TestParseLabelMappings:
    """Test operator label mapping parsing."""

    def test_parses_pairs_in_order(self):
        mappings = parse_label_mappings("runner-*:linux, MAC-*:MacOS")
        assert mappings == [
            LabelMapping("runner-*", OSType.LINUX),
            LabelMapping("mac-*", OSType.MACOS),
        ]

    def test_empty_input(self):
        assert parse_label_mappings("") == []

    def test_missing_os_raises(self):
        with pytest.raises(ConfigurationError, match="Invalid label mapping"):
            parse_label_mappings("runner-*")

    def test_unknown_os_raises(self):
        with pytest.raises(ConfigurationError, match="Invalid OS type: solaris"):
            parse_label_mappings("runner-*:solaris")

    def test_unknown_is_not_mappable(self):
        with pytest.raises(ConfigurationError):
            parse_label_mappings("runner-*:unknown")


class TestDetectOS:
    """Test OS classification from runner labels."""

    def test_custom_mapping_matches_glob(self):
        mappings = parse_label_mappings("runner-*:linux")
        assert detect_os(["self-hosted", "runner-42-prod"], mappings) == OSType.LINUX

    def test_no_match_is_unknown(self):
        assert detect_os(["self-hosted", "runner-42-prod"]) == OSType.UNKNOWN

    def test_custom_mapping_is_anchored(self):
        mappings = [LabelMapping("runner", OSType.WINDOWS)]
        assert detect_os(["my-runner-1"], mappings) == OSType.UNKNOWN

    def test_custom_mapping_is_case_insensitive(self):
        mappings = [LabelMapping("build-*", OSType.MACOS)]
        assert detect_os(["BUILD-Agent"], mappings) == OSType.MACOS

    def test_custom_mapping_escapes_regex_characters(self):
        mappings = [LabelMapping("gpu.large", OSType.WINDOWS)]
        assert detect_os(["gpuxlarge"], mappings) == OSType.UNKNOWN
        assert detect_os(["gpu.large"], mappings) == OSType.WINDOWS

    def test_custom_mapping_beats_defaults(self):
        mappings = [LabelMapping("ubuntu-*", OSType.WINDOWS)]
        assert detect_os(["ubuntu-latest"], mappings) == OSType.WINDOWS

    def test_first_custom_mapping_wins(self):
        mappings = parse_label_mappings("a-*:windows,*-b:macos")
        assert detect_os(["x-b", "a-1"], mappings) == OSType.WINDOWS

    def test_default_order_is_respected(self):
        """ubuntu is declared before macos, so it wins whatever the label order."""
        assert detect_os(["ubuntu-latest", "macos-large"]) == OSType.LINUX
        assert detect_os(["macos-large", "ubuntu-latest"]) == OSType.LINUX

    @pytest.mark.parametrize("label,expected", [
        ("ubuntu-22.04", OSType.LINUX),
        ("Linux", OSType.LINUX),
        ("windows-2022", OSType.WINDOWS),
        ("win-runner", OSType.WINDOWS),
        ("macos-14", OSType.MACOS),
        ("mac-mini", OSType.MACOS),
    ])
    def test_builtin_patterns(self, label, expected):
        assert detect_os([label]) == expected

    def test_substring_precedence_follows_declared_order(self):
        """"win" is declared before the macOS patterns and also matches "darwin"."""
        assert detect_os(["darwin-arm64"]) == OSType.WINDOWS
        assert detect_os(["osx-darwin", "mac-mini"]) == OSType.WINDOWS

    def test_empty_labels(self):
        assert detect_os([]) == OSType.UNKNOWN


class TestDuration:
    """Test per-job minute rounding."""

    def test_one_second_bills_one_minute(self):
        assert calculate_duration_minutes("2024-01-01T10:00:00Z", "2024-01-01T10:00:01Z") == 1

    def test_exact_minutes_do_not_round(self):
        assert calculate_duration_minutes("2024-01-01T10:00:00Z", "2024-01-01T10:03:00Z") == 3

    def test_rounds_up_not_nearest(self):
        assert calculate_duration_minutes("2024-01-01T10:00:00Z", "2024-01-01T10:03:01Z") == 4

    def test_zero_duration(self):
        assert calculate_duration_minutes("2024-01-01T10:00:00Z", "2024-01-01T10:00:00Z") == 0

    def test_billable_minutes_apply_multiplier(self):
        assert calculate_billable_minutes("2024-01-01T10:00:00Z", "2024-01-01T10:02:30Z", 10) == 30

    def test_multipliers(self):
        assert get_multiplier(OSType.LINUX) == 1
        assert get_multiplier(OSType.WINDOWS) == 2
        assert get_multiplier(OSType.MACOS) == 10
        assert get_multiplier(OSType.UNKNOWN) == 1


class TestProcessJob:

    def test_macos_job(self, make_job):
        result = process_job(make_job(labels=["macos-14"]))
        assert result.os == OSType.MACOS
        assert result.duration_minutes == 5
        assert result.multiplier == 10
        assert result.billable_minutes == 50

    def test_running_job_rejected(self, make_job):
        with pytest.raises(ValueError):
            process_job(make_job(completed_at=None))


class TestAggregateBilling:
    """Test rollup invariants."""

    @pytest.fixture
    def jobs(self, make_job):
        return [
            make_job(job_id=1, run_id=100, labels=["ubuntu-latest"], repo="acme/api", workflow="CI"),
            make_job(job_id=2, run_id=100, labels=["windows-latest"], repo="acme/api", workflow="CI",
                     started_at="2024-01-15T11:00:00Z", completed_at="2024-01-15T11:10:00Z"),
            make_job(job_id=3, run_id=101, labels=["macos-14"], repo="acme/api", workflow="CI",
                     started_at="2024-01-16T08:00:00Z", completed_at="2024-01-16T08:00:30Z"),
            make_job(job_id=4, run_id=200, labels=["self-hosted"], repo="acme/web", workflow="Deploy",
                     started_at="2024-01-17T23:59:00Z", completed_at="2024-01-18T00:01:00Z"),
            make_job(job_id=5, run_id=201, labels=["ubuntu-latest"], repo="acme/web", workflow=None),
            make_job(job_id=6, run_id=202, repo="acme/web", completed_at=None),
        ]

    def test_totals(self, jobs):
        billing = aggregate_billing(jobs)

        # 5 + 10 + 1 + 2 + 5 minutes; weighted 5 + 20 + 10 + 2 + 5
        assert billing.total_minutes == 23
        assert billing.total_billable_minutes == 42
        assert billing.job_count == 5
        assert billing.run_count == 4
        assert len(billing.jobs) == 5

    def test_running_jobs_are_excluded_everywhere(self, jobs):
        billing = aggregate_billing(jobs)

        assert all(result.job.id != 6 for result in billing.jobs)
        assert sum(u.job_count for u in billing.by_repo.values()) == billing.job_count
        assert "acme/web/CI" not in billing.by_workflow

    def test_group_sums_equal_job_count(self, jobs):
        billing = aggregate_billing(jobs)

        assert sum(b.job_count for b in billing.by_os.values()) == billing.job_count
        assert sum(b.job_count for b in billing.by_date.values()) == billing.job_count
        assert sum(u.job_count for u in billing.by_repo.values()) == billing.job_count
        assert sum(u.job_count for u in billing.by_workflow.values()) == billing.job_count

    def test_by_os_has_fixed_keys(self, jobs):
        billing = aggregate_billing(jobs)

        assert list(billing.by_os) == [OSType.LINUX, OSType.WINDOWS, OSType.MACOS, OSType.UNKNOWN]
        assert billing.by_os[OSType.LINUX].job_count == 2
        assert billing.by_os[OSType.WINDOWS].billable_minutes == 20
        assert billing.by_os[OSType.MACOS].minutes == 1
        assert billing.by_os[OSType.UNKNOWN].billable_minutes == 2

    def test_empty_input(self):
        billing = aggregate_billing([])

        assert billing.job_count == 0
        assert billing.run_count == 0
        assert all(b.job_count == 0 for b in billing.by_os.values())
        assert billing.by_date == {}

    def test_workflow_run_count_counts_distinct_runs(self, jobs):
        billing = aggregate_billing(jobs)

        ci = billing.by_workflow["acme/api/CI"]
        assert ci.job_count == 3
        assert ci.run_count == 2
        assert billing.by_workflow["acme/web/Deploy"].run_count == 1

    def test_missing_workflow_name_is_unknown(self, jobs):
        billing = aggregate_billing(jobs)

        assert billing.by_workflow["acme/web/unknown"].job_count == 1
        assert billing.by_repo["acme/web"].workflows == {"Deploy", "unknown"}
        assert billing.by_repo["acme/api"].workflows == {"CI"}

    def test_date_uses_start_day(self, jobs):
        billing = aggregate_billing(jobs)

        assert set(billing.by_date) == {"2024-01-15", "2024-01-16", "2024-01-17"}
        assert billing.by_date["2024-01-15"].job_count == 3
        assert billing.by_date["2024-01-17"].minutes == 2

    def test_custom_mappings_apply(self, make_job):
        billing = aggregate_billing(
            [make_job(labels=["self-hosted", "runner-42-prod"])],
            parse_label_mappings("runner-*:windows")
        )
        assert billing.by_os[OSType.WINDOWS].job_count == 1

    def test_idempotent_and_order_independent(self, jobs):
        first = aggregate_billing(jobs)
        shuffled = list(jobs)
        random.Random(7).shuffle(shuffled)
        second = aggregate_billing(shuffled)

        assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(aggregate_billing(jobs).to_dict(), sort_keys=True)
        assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(second.to_dict(), sort_keys=True)


class TestCost:
    """Test cost estimation and projection."""

    def _billing(self, linux=0, windows=0, macos=0, unknown=0):
        billing = aggregate_billing([])
        for os_type, minutes in [(OSType.LINUX, linux), (OSType.WINDOWS, windows),
                                 (OSType.MACOS, macos), (OSType.UNKNOWN, unknown)]:
            billing.by_os[os_type].minutes = minutes
            billing.by_os[os_type].billable_minutes = minutes * MULTIPLIERS[os_type]
        billing.total_billable_minutes = sum(b.billable_minutes for b in billing.by_os.values())
        return billing

    def test_estimate_cost_uses_raw_minutes_per_os(self):
        billing = self._billing(linux=100, windows=50, macos=10)
        assert estimate_cost(billing) == pytest.approx(2.40)

    def test_unknown_billed_at_linux_rate(self):
        assert estimate_cost(self._billing(unknown=100)) == pytest.approx(0.8)

    def test_projection(self):
        billing = self._billing(linux=100, windows=50, macos=10)
        projection = project_costs(billing, 7)

        assert projection.daily == pytest.approx(2.40 / 7)
        assert projection.weekly == pytest.approx(2.40)
        assert projection.monthly == pytest.approx(2.40 / 7 * 30)
        assert projection.monthly == pytest.approx(10.2857, abs=1e-4)
        # 100 + 100 + 100 weighted minutes
        assert projection.daily_billable_minutes == pytest.approx(300 / 7)


class TestGroupByPeriod:

    @pytest.fixture
    def by_date(self):
        return {
            "2024-01-01": UsageBucket(minutes=1, billable_minutes=1, job_count=1),   # Monday
            "2024-01-07": UsageBucket(minutes=2, billable_minutes=4, job_count=1),   # Sunday
            "2024-01-08": UsageBucket(minutes=3, billable_minutes=3, job_count=2),   # Monday
            "2024-02-01": UsageBucket(minutes=5, billable_minutes=50, job_count=1),
        }

    def test_day_copies(self, by_date):
        grouped = group_by_period(by_date, "day")
        grouped["2024-01-01"].minutes = 99
        assert by_date["2024-01-01"].minutes == 1

    def test_week_starts_monday(self, by_date):
        grouped = group_by_period(by_date, "week")

        assert set(grouped) == {"2024-01-01", "2024-01-08", "2024-01-29"}
        assert grouped["2024-01-01"].minutes == 3
        assert grouped["2024-01-01"].billable_minutes == 5
        assert grouped["2024-01-08"].job_count == 2

    def test_month(self, by_date):
        grouped = group_by_period(by_date, "month")

        assert set(grouped) == {"2024-01", "2024-02"}
        assert grouped["2024-01"].job_count == 4
        assert grouped["2024-02"].billable_minutes == 50

    def test_unknown_period(self, by_date):
        with pytest.raises(ValueError):
            group_by_period(by_date, "year")
