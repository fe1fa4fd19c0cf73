"""Report point hierarchy and the interval/comparison/window pipeline.

Functions here work on value objects only and never touch the database.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Iterable, Mapping, Optional, Sequence, Union

from models import PostingKind, ReportInterval
from periods import (
    ALL_HISTORY_ANCHOR,
    interval_source_period,
    latest_period,
    period_start,
    previous_period,
    year_ago,
)

UNCATEGORIZED = "Uncategorized"

KIND_DISPLAY_NAMES: dict[PostingKind, str] = {
    PostingKind.bank: "Accounts",
    PostingKind.contact: "Contacts",
    PostingKind.savings_plan: "SavingsPlans",
    PostingKind.security: "Securities",
}

_KIND_LABELS: dict[PostingKind, str] = {
    PostingKind.bank: "Bank",
    PostingKind.contact: "Contact",
    PostingKind.savings_plan: "SavingsPlan",
    PostingKind.security: "Security",
}

_ENTITY_LABELS: dict[PostingKind, str] = {
    PostingKind.bank: "Account",
    PostingKind.contact: "Contact",
    PostingKind.savings_plan: "SavingsPlan",
    PostingKind.security: "Security",
}

CATEGORY_KINDS = frozenset(
    {PostingKind.contact, PostingKind.savings_plan, PostingKind.security}
)


def supports_categories(kind: PostingKind) -> bool:
    return kind in CATEGORY_KINDS


@dataclass(frozen=True)
class EntityKey:
    kind: PostingKind
    entity_id: int

    def __str__(self) -> str:
        return f"{_ENTITY_LABELS[self.kind]}:{self.entity_id}"


@dataclass(frozen=True)
class CategoryKey:
    kind: PostingKind
    category_id: Optional[int] = None

    def __str__(self) -> str:
        suffix = "_none" if self.category_id is None else str(self.category_id)
        return f"Category:{_KIND_LABELS[self.kind]}:{suffix}"


@dataclass(frozen=True)
class KindKey:
    kind: PostingKind

    def __str__(self) -> str:
        return f"Type:{_KIND_LABELS[self.kind]}"


GroupKey = Union[EntityKey, CategoryKey, KindKey]


@dataclass(frozen=True)
class ReportPoint:
    period_start: date
    group_key: GroupKey
    group_name: str
    category_name: Optional[str]
    amount_cents: int
    parent_group_key: Optional[GroupKey] = None
    previous_amount_cents: Optional[int] = None
    year_ago_amount_cents: Optional[int] = None

    def evolve(self, **changes) -> "ReportPoint":
        return replace(self, **changes)

    @property
    def is_category(self) -> bool:
        return isinstance(self.group_key, CategoryKey)


@dataclass(frozen=True)
class OwnedEntity:
    id: int
    name: str
    category_id: Optional[int] = None
    category_name: Optional[str] = None


@dataclass(frozen=True)
class EntityRow:
    kind: PostingKind
    period_start: date
    entity_id: int
    amount_cents: int


@dataclass(frozen=True)
class ReportAggregationResult:
    interval: ReportInterval
    points: list[ReportPoint] = field(default_factory=list)
    compare_previous: bool = False
    compare_year: bool = False


def _category_name(entity: Optional[OwnedEntity]) -> str:
    if entity is None or entity.category_id is None:
        return UNCATEGORIZED
    return entity.category_name or str(entity.category_id)


def build_hierarchy(
    rows: Iterable[EntityRow],
    owned: Mapping[PostingKind, Mapping[int, OwnedEntity]],
    *,
    multi: bool,
    include_category: bool,
) -> list[ReportPoint]:
    """Entity points plus category and kind roll-ups.

    Entities hang below their category when categories are requested for a
    kind that has them, otherwise below their kind in multi-kind reports.
    Kind totals are only produced for multi-kind reports.
    """
    entity_sums: dict[tuple[PostingKind, date, int], int] = defaultdict(int)
    for row in rows:
        entity_sums[(row.kind, row.period_start, row.entity_id)] += row.amount_cents

    points: list[ReportPoint] = []
    category_sums: dict[tuple[PostingKind, date, Optional[int]], int] = defaultdict(
        int
    )
    category_names: dict[tuple[PostingKind, Optional[int]], str] = {}

    for (kind, start, entity_id), amount in sorted(
        entity_sums.items(), key=lambda item: (item[0][1], item[0][2])
    ):
        entity = owned.get(kind, {}).get(entity_id)
        name = entity.name if entity else str(entity_id)
        use_category = include_category and supports_categories(kind)

        category_name: Optional[str] = None
        parent: Optional[GroupKey] = None
        if use_category:
            category_id = entity.category_id if entity else None
            category_name = _category_name(entity)
            category_sums[(kind, start, category_id)] += amount
            category_names[(kind, category_id)] = category_name
            parent = CategoryKey(kind, category_id)
        elif multi:
            parent = KindKey(kind)

        points.append(
            ReportPoint(
                period_start=start,
                group_key=EntityKey(kind, entity_id),
                group_name=name,
                category_name=category_name,
                amount_cents=amount,
                parent_group_key=parent,
            )
        )

    for (kind, start, category_id), amount in category_sums.items():
        name = category_names[(kind, category_id)]
        points.append(
            ReportPoint(
                period_start=start,
                group_key=CategoryKey(kind, category_id),
                group_name=name,
                category_name=name,
                amount_cents=amount,
                parent_group_key=KindKey(kind) if multi else None,
            )
        )

    if multi:
        kind_sums: dict[tuple[PostingKind, date], int] = defaultdict(int)
        for point in points:
            kind = point.group_key.kind
            from_categories = include_category and supports_categories(kind)
            if point.is_category == from_categories:
                kind_sums[(kind, point.period_start)] += point.amount_cents
        for (kind, start), amount in kind_sums.items():
            points.append(
                ReportPoint(
                    period_start=start,
                    group_key=KindKey(kind),
                    group_name=KIND_DISPLAY_NAMES[kind],
                    category_name=None,
                    amount_cents=amount,
                )
            )

    return points


def _by_group(points: Iterable[ReportPoint]) -> dict[GroupKey, list[ReportPoint]]:
    groups: dict[GroupKey, list[ReportPoint]] = defaultdict(list)
    for point in points:
        groups[point.group_key].append(point)
    return groups


def to_year_to_date(points: Sequence[ReportPoint], analysis: date) -> list[ReportPoint]:
    out: list[ReportPoint] = []
    for group in _by_group(points).values():
        by_year: dict[int, list[ReportPoint]] = defaultdict(list)
        for point in group:
            if point.period_start.year <= analysis.year:
                by_year[point.period_start.year].append(point)
        for year in sorted(by_year):
            members = by_year[year]
            sample = min(members, key=lambda p: p.period_start)
            amount = sum(
                p.amount_cents for p in members if p.period_start.month <= analysis.month
            )
            out.append(
                sample.evolve(period_start=date(year, 1, 1), amount_cents=amount)
            )
    return sorted(out, key=lambda p: (p.period_start, str(p.group_key)))


def collapse_all_history(points: Sequence[ReportPoint]) -> list[ReportPoint]:
    out: list[ReportPoint] = []
    for group in _by_group(points).values():
        sample = min(group, key=lambda p: p.period_start)
        out.append(
            sample.evolve(
                period_start=ALL_HISTORY_ANCHOR,
                amount_cents=sum(p.amount_cents for p in group),
            )
        )
    out.sort(key=lambda p: str(p.group_key))

    # kind totals are always available here, even for single-kind reports
    present = {p.group_key for p in out}
    kind_sums: dict[PostingKind, int] = {}
    for point in out:
        if isinstance(point.group_key, EntityKey):
            kind = point.group_key.kind
            kind_sums[kind] = kind_sums.get(kind, 0) + point.amount_cents
    for kind, amount in kind_sums.items():
        if KindKey(kind) in present:
            continue
        out.append(
            ReportPoint(
                period_start=ALL_HISTORY_ANCHOR,
                group_key=KindKey(kind),
                group_name=KIND_DISPLAY_NAMES[kind],
                category_name=None,
                amount_cents=amount,
            )
        )
    return out


def regroup_to_interval(
    points: Sequence[ReportPoint], interval: ReportInterval
) -> list[ReportPoint]:
    """Fold monthly points into quarter, half-year or year buckets."""
    target = interval_source_period(interval)
    sums: dict[tuple, int] = defaultdict(int)
    samples: dict[tuple, ReportPoint] = {}
    for point in points:
        key = (period_start(point.period_start, target), point.group_key)
        sums[key] += point.amount_cents
        samples.setdefault(key, point)
    return [
        samples[key].evolve(period_start=key[0], amount_cents=amount)
        for key, amount in sums.items()
    ]


def apply_interval_transform(
    points: Sequence[ReportPoint],
    interval: ReportInterval,
    analysis: date,
    *,
    regroup_months: bool = False,
) -> list[ReportPoint]:
    if not points:
        return []
    if interval == ReportInterval.ytd:
        return to_year_to_date(points, analysis)
    if interval == ReportInterval.all_history:
        return collapse_all_history(points)
    if regroup_months and interval in (
        ReportInterval.quarter,
        ReportInterval.half_year,
        ReportInterval.year,
    ):
        return regroup_to_interval(points, interval)
    return list(points)


def backfill_latest(points: Sequence[ReportPoint], latest: date) -> list[ReportPoint]:
    """Drop points after ``latest`` and give every group a point at ``latest``."""
    kept = [p for p in points if p.period_start <= latest]
    present = {p.group_key for p in kept if p.period_start == latest}
    newest: dict[GroupKey, ReportPoint] = {}
    for point in kept:
        current = newest.get(point.group_key)
        if current is None or point.period_start > current.period_start:
            newest[point.group_key] = point
    for key, sample in newest.items():
        if key in present:
            continue
        kept.append(
            sample.evolve(
                period_start=latest,
                amount_cents=0,
                previous_amount_cents=None,
                year_ago_amount_cents=None,
            )
        )
    return kept


def attach_comparisons(
    points: Sequence[ReportPoint],
    interval: ReportInterval,
    *,
    compare_previous: bool,
    compare_year: bool,
) -> list[ReportPoint]:
    if not (compare_previous or compare_year):
        return list(points)
    index = {(p.group_key, p.period_start): p.amount_cents for p in points}
    out: list[ReportPoint] = []
    for point in points:
        changes: dict[str, int] = {}
        if compare_previous:
            prev = index.get(
                (point.group_key, previous_period(point.period_start, interval))
            )
            if prev is not None:
                changes["previous_amount_cents"] = prev
        if compare_year:
            ago = index.get((point.group_key, year_ago(point.period_start)))
            if ago is not None:
                changes["year_ago_amount_cents"] = ago
        out.append(point.evolve(**changes) if changes else point)
    return out


def trim_window(
    points: Sequence[ReportPoint], take: int, latest: date
) -> list[ReportPoint]:
    if take <= 0:
        return list(points)
    starts = sorted({p.period_start for p in points if p.period_start <= latest})
    if len(starts) <= take:
        return list(points)
    keep = set(starts[-take:])
    return [p for p in points if p.period_start in keep]


def prune_stale_groups(
    points: Sequence[ReportPoint],
    latest: date,
    *,
    compare_previous: bool,
    compare_year: bool,
) -> list[ReportPoint]:
    removable: set[GroupKey] = set()
    seen: set[GroupKey] = set()
    for point in points:
        if point.period_start != latest or point.group_key in seen:
            continue
        seen.add(point.group_key)
        has_previous = compare_previous and bool(point.previous_amount_cents)
        has_year = compare_year and bool(point.year_ago_amount_cents)
        if point.amount_cents == 0 and not has_previous and not has_year:
            removable.add(point.group_key)
    if not removable:
        return list(points)
    return [p for p in points if p.group_key not in removable]


def sort_points(points: Iterable[ReportPoint]) -> list[ReportPoint]:
    return sorted(
        points,
        key=lambda p: (p.period_start, 0 if p.is_category else 1, p.group_name),
    )


def finalize_points(
    points: Sequence[ReportPoint],
    *,
    interval: ReportInterval,
    analysis: date,
    take: int,
    compare_previous: bool,
    compare_year: bool,
    regroup_months: bool = False,
) -> list[ReportPoint]:
    """Run the interval transform, backfill, comparisons, window and pruning."""
    all_history = interval == ReportInterval.all_history
    latest = latest_period(interval, analysis)

    result = apply_interval_transform(
        points, interval, analysis, regroup_months=regroup_months
    )
    if not all_history and result:
        result = backfill_latest(result, latest)
    result = attach_comparisons(
        result,
        interval,
        compare_previous=compare_previous,
        compare_year=compare_year,
    )
    result = trim_window(result, take, latest)
    if not all_history and (compare_previous or compare_year):
        result = prune_stale_groups(
            result,
            latest,
            compare_previous=compare_previous,
            compare_year=compare_year,
        )
    return sort_points(result)
