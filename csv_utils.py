import csv
import re
from io import StringIO
from typing import Optional, Sequence

from report_engine import ReportPoint


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^https?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_cents(cents: Optional[int]) -> str:
    if cents is None:
        return ""
    sign = "-" if cents < 0 else ""
    whole, rest = divmod(abs(cents), 100)
    return f"{sign}{whole}.{rest:02d}"


def export_report_points(points: Sequence[ReportPoint]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "PeriodStart",
            "GroupKey",
            "GroupName",
            "CategoryName",
            "ParentGroupKey",
            "Amount",
            "PreviousAmount",
            "YearAgoAmount",
        ]
    )
    for point in points:
        writer.writerow(
            [
                point.period_start.isoformat(),
                str(point.group_key),
                sanitize_csv_value(point.group_name),
                sanitize_csv_value(point.category_name or ""),
                str(point.parent_group_key) if point.parent_group_key else "",
                format_cents(point.amount_cents),
                format_cents(point.previous_amount_cents),
                format_cents(point.year_ago_amount_cents),
            ]
        )
    return output.getvalue()
