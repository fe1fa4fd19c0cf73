from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import AggregatePeriod, ReportInterval

# Anchor for collapsed all-history points.
ALL_HISTORY_ANCHOR = date(2000, 1, 1)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def quarter_start(d: date) -> date:
    return date(d.year, ((d.month - 1) // 3) * 3 + 1, 1)


def half_year_start(d: date) -> date:
    return date(d.year, 1 if d.month <= 6 else 7, 1)


def period_start(d: date, period: AggregatePeriod) -> date:
    if period == AggregatePeriod.quarter:
        return quarter_start(d)
    if period == AggregatePeriod.half_year:
        return half_year_start(d)
    if period == AggregatePeriod.year:
        return date(d.year, 1, 1)
    return month_start(d)


def interval_source_period(interval: ReportInterval) -> AggregatePeriod:
    """Aggregate granularity a report interval is read from.

    Year-to-date and all-history reports are derived from monthly sums.
    """
    if interval == ReportInterval.quarter:
        return AggregatePeriod.quarter
    if interval == ReportInterval.half_year:
        return AggregatePeriod.half_year
    if interval == ReportInterval.year:
        return AggregatePeriod.year
    return AggregatePeriod.month


def normalize_analysis_date(analysis: Optional[date]) -> date:
    return month_start(analysis or local_today())


def latest_period(interval: ReportInterval, analysis: date) -> date:
    if interval == ReportInterval.month:
        return month_start(analysis)
    if interval == ReportInterval.quarter:
        return quarter_start(analysis)
    if interval == ReportInterval.half_year:
        return half_year_start(analysis)
    return date(analysis.year, 1, 1)


def previous_period(d: date, interval: ReportInterval) -> date:
    if interval == ReportInterval.quarter:
        return add_months(quarter_start(d), -3)
    if interval == ReportInterval.half_year:
        return add_months(half_year_start(d), -6)
    if interval in (ReportInterval.year, ReportInterval.ytd):
        return date(d.year - 1, 1, 1)
    return add_months(d, -1)


def year_ago(d: date) -> date:
    # period starts are always the first of a month, so no Feb 29 edge case
    return d.replace(year=d.year - 1)
