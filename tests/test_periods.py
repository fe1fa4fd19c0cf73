from datetime import date

from models import AggregatePeriod, ReportInterval
from periods import (
    add_months,
    interval_source_period,
    latest_period,
    normalize_analysis_date,
    period_start,
    previous_period,
    year_ago,
)


def test_period_start_alignment() -> None:
    d = date(2024, 8, 17)
    assert period_start(d, AggregatePeriod.month) == date(2024, 8, 1)
    assert period_start(d, AggregatePeriod.quarter) == date(2024, 7, 1)
    assert period_start(d, AggregatePeriod.half_year) == date(2024, 7, 1)
    assert period_start(d, AggregatePeriod.year) == date(2024, 1, 1)

    assert period_start(date(2024, 3, 31), AggregatePeriod.quarter) == date(2024, 1, 1)
    assert period_start(date(2024, 6, 30), AggregatePeriod.half_year) == date(2024, 1, 1)


def test_add_months_crosses_year_boundaries() -> None:
    assert add_months(date(2024, 1, 31), -1) == date(2023, 12, 1)
    assert add_months(date(2023, 11, 5), 3) == date(2024, 2, 1)
    assert add_months(date(2024, 5, 1), -24) == date(2022, 5, 1)


def test_interval_source_period() -> None:
    assert interval_source_period(ReportInterval.month) == AggregatePeriod.month
    assert interval_source_period(ReportInterval.quarter) == AggregatePeriod.quarter
    assert interval_source_period(ReportInterval.half_year) == AggregatePeriod.half_year
    assert interval_source_period(ReportInterval.year) == AggregatePeriod.year
    assert interval_source_period(ReportInterval.ytd) == AggregatePeriod.month
    assert interval_source_period(ReportInterval.all_history) == AggregatePeriod.month


def test_latest_and_previous_period() -> None:
    analysis = normalize_analysis_date(date(2024, 8, 20))
    assert analysis == date(2024, 8, 1)

    assert latest_period(ReportInterval.month, analysis) == date(2024, 8, 1)
    assert latest_period(ReportInterval.quarter, analysis) == date(2024, 7, 1)
    assert latest_period(ReportInterval.half_year, analysis) == date(2024, 7, 1)
    assert latest_period(ReportInterval.year, analysis) == date(2024, 1, 1)
    assert latest_period(ReportInterval.ytd, analysis) == date(2024, 1, 1)

    assert previous_period(date(2024, 1, 1), ReportInterval.month) == date(2023, 12, 1)
    assert previous_period(date(2024, 1, 1), ReportInterval.quarter) == date(2023, 10, 1)
    assert previous_period(date(2024, 7, 1), ReportInterval.half_year) == date(2024, 1, 1)
    assert previous_period(date(2024, 1, 1), ReportInterval.ytd) == date(2023, 1, 1)
    assert year_ago(date(2024, 2, 1)) == date(2023, 2, 1)
