import csv
from datetime import date
from io import StringIO

from csv_utils import export_report_points, format_cents, sanitize_csv_value
from models import PostingKind
from report_engine import CategoryKey, EntityKey, ReportPoint


def test_export_report_points() -> None:
    points = [
        ReportPoint(
            period_start=date(2024, 2, 1),
            group_key=EntityKey(PostingKind.contact, 4),
            group_name="=HYPERLINK(\"x\")",
            category_name="Food",
            amount_cents=-1_234,
            parent_group_key=CategoryKey(PostingKind.contact, 2),
            previous_amount_cents=5,
        )
    ]

    rows = list(csv.reader(StringIO(export_report_points(points))))

    assert rows[0] == [
        "PeriodStart",
        "GroupKey",
        "GroupName",
        "CategoryName",
        "ParentGroupKey",
        "Amount",
        "PreviousAmount",
        "YearAgoAmount",
    ]
    assert rows[1] == [
        "2024-02-01",
        "Contact:4",
        "\t=HYPERLINK(\"x\")",
        "Food",
        "Category:Contact:2",
        "-12.34",
        "0.05",
        "",
    ]


def test_format_and_sanitize_helpers() -> None:
    assert format_cents(0) == "0.00"
    assert format_cents(-5) == "-0.05"
    assert format_cents(None) == ""
    assert sanitize_csv_value("  Rent ") == "Rent"
    assert sanitize_csv_value("@SUM(A1)") == "\t@SUM(A1)"
