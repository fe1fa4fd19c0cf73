from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, NamedTuple, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session, aliased

from config import get_settings
from models import (
    KIND_REFERENCE_COLUMNS,
    Account,
    AggregateDateKind,
    AggregatePeriod,
    Contact,
    ContactCategory,
    Posting,
    PostingAggregate,
    PostingKind,
    ReportInterval,
    SavingsPlan,
    SavingsPlanCategory,
    Security,
    SecurityCategory,
    SecurityPostingSubType,
)
from periods import (
    add_months,
    interval_source_period,
    local_today,
    month_start,
    normalize_analysis_date,
    period_start,
)
from report_engine import (
    EntityRow,
    OwnedEntity,
    ReportAggregationResult,
    build_hierarchy,
    finalize_points,
)
from schemas import PostingIn, ReportAggregationFilters, ReportAggregationQuery

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

OWNER_MODELS = {
    PostingKind.bank: Account,
    PostingKind.contact: Contact,
    PostingKind.savings_plan: SavingsPlan,
    PostingKind.security: Security,
}

CATEGORY_MODELS = {
    PostingKind.contact: ContactCategory,
    PostingKind.savings_plan: SavingsPlanCategory,
    PostingKind.security: SecurityCategory,
}

NET_LEG_SUB_TYPES = frozenset(
    {
        SecurityPostingSubType.dividend,
        SecurityPostingSubType.fee,
        SecurityPostingSubType.tax,
    }
)

DEFAULT_SERIES_TAKE = {
    AggregatePeriod.month: 36,
    AggregatePeriod.quarter: 16,
    AggregatePeriod.half_year: 12,
    AggregatePeriod.year: 10,
}
MAX_SERIES_TAKE = 200
MAX_YEARS_BACK = 10


def get_current_user_id() -> int:
    return 1


class AggregateConsistencyError(RuntimeError):
    """Postings violate the partitioning the aggregates rely on."""


class AggregateKey(NamedTuple):
    kind: PostingKind
    account_id: Optional[int]
    contact_id: Optional[int]
    savings_plan_id: Optional[int]
    security_id: Optional[int]
    security_sub_type: Optional[SecurityPostingSubType]
    period: AggregatePeriod
    period_start: date
    date_kind: AggregateDateKind


def _aggregate_keys(
    kind: PostingKind,
    entity_id: int,
    sub_type: Optional[SecurityPostingSubType],
    booking_date: date,
    valuta_date: date,
) -> list[AggregateKey]:
    refs = {column: None for column in KIND_REFERENCE_COLUMNS.values()}
    refs[KIND_REFERENCE_COLUMNS[kind]] = entity_id
    if kind != PostingKind.security:
        sub_type = None
    keys = []
    for period in AggregatePeriod:
        for date_kind, source in (
            (AggregateDateKind.booking, booking_date),
            (AggregateDateKind.valuta, valuta_date),
        ):
            keys.append(
                AggregateKey(
                    kind=kind,
                    security_sub_type=sub_type,
                    period=period,
                    period_start=period_start(source, period),
                    date_kind=date_kind,
                    **refs,
                )
            )
    return keys


def _reference_column(model, kind: PostingKind):
    return getattr(model, KIND_REFERENCE_COLUMNS[kind])


def _owned_scope(model, owned_ids: dict[PostingKind, list[int]]):
    clauses = [
        _reference_column(model, kind).in_(ids)
        for kind, ids in owned_ids.items()
        if ids
    ]
    if not clauses:
        return None
    return or_(*clauses)


def owned_entity_ids(session: Session, user_id: int) -> dict[PostingKind, list[int]]:
    return {
        kind: list(session.scalars(select(model.id).where(model.user_id == user_id)))
        for kind, model in OWNER_MODELS.items()
    }


def owner_user_ids(session: Session) -> list[int]:
    user_ids: set[int] = set()
    for model in OWNER_MODELS.values():
        user_ids.update(session.scalars(select(model.user_id).distinct()))
    return sorted(user_ids)


def load_owned_entities(
    session: Session, user_id: int, kind: PostingKind
) -> dict[int, OwnedEntity]:
    model = OWNER_MODELS[kind]
    category_model = CATEGORY_MODELS.get(kind)
    if category_model is None:
        rows = session.execute(
            select(model.id, model.name).where(model.user_id == user_id)
        ).all()
        return {row.id: OwnedEntity(id=row.id, name=row.name) for row in rows}

    rows = session.execute(
        select(
            model.id,
            model.name,
            model.category_id,
            category_model.name.label("category_name"),
        )
        .outerjoin(category_model, model.category_id == category_model.id)
        .where(model.user_id == user_id)
    ).all()
    return {
        row.id: OwnedEntity(
            id=row.id,
            name=row.name,
            category_id=row.category_id,
            category_name=row.category_name,
        )
        for row in rows
    }


class PostingAggregateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _find(self, key: AggregateKey) -> Optional[PostingAggregate]:
        clauses = []
        for name, value in key._asdict().items():
            column = getattr(PostingAggregate, name)
            clauses.append(column.is_(None) if value is None else column == value)
        return self.session.scalar(select(PostingAggregate).where(*clauses))

    def upsert_for_posting(self, posting: Posting) -> None:
        if posting.amount_cents == 0:
            return
        if posting.valuta_date is None:
            posting.valuta_date = posting.booking_date
        entity_id = posting.entity_id
        if entity_id is None:
            raise AggregateConsistencyError(
                f"Posting {posting.id} has no {posting.kind.value} reference"
            )
        for key in _aggregate_keys(
            posting.kind,
            entity_id,
            posting.security_sub_type,
            posting.booking_date,
            posting.valuta_date,
        ):
            row = self._find(key)
            if row is None:
                row = PostingAggregate(**key._asdict(), amount_cents=0)
                self.session.add(row)
                self.session.flush()
            row.amount_cents += posting.amount_cents
        self.session.flush()

    def rebuild_for_user(
        self,
        user_id: int,
        progress_callback: Optional[ProgressCallback] = None,
        batch_size: Optional[int] = None,
    ) -> int:
        """Recompute every aggregate row of the user's entities from postings.

        Returns the number of aggregate rows written. The work is committed
        once; on failure the session is rolled back and the error re-raised.
        """
        batch_size = batch_size or get_settings().rebuild_batch_size
        logger.info(f"aggregate_rebuild_start: user_id={user_id}")
        try:
            owned = owned_entity_ids(self.session, user_id)
            aggregate_scope = _owned_scope(PostingAggregate, owned)
            posting_scope = _owned_scope(Posting, owned)
            postings = []
            if aggregate_scope is not None:
                self.session.execute(delete(PostingAggregate).where(aggregate_scope))
                self.session.flush()
                postings = self.session.execute(
                    select(
                        Posting.id,
                        Posting.kind,
                        Posting.account_id,
                        Posting.contact_id,
                        Posting.savings_plan_id,
                        Posting.security_id,
                        Posting.booking_date,
                        Posting.valuta_date,
                        Posting.amount_cents,
                        Posting.security_sub_type,
                        Posting.group_id,
                    ).where(posting_scope)
                ).all()

            for row in postings:
                self._check_partitioning(row)
            self._check_group_ownership(postings, owned)

            sums: dict[AggregateKey, int] = {}
            for row in postings:
                if row.amount_cents == 0:
                    continue
                entity_id = getattr(row, KIND_REFERENCE_COLUMNS[row.kind])
                for key in _aggregate_keys(
                    row.kind,
                    entity_id,
                    row.security_sub_type,
                    row.booking_date,
                    row.valuta_date or row.booking_date,
                ):
                    sums[key] = sums.get(key, 0) + row.amount_cents

            total = len(sums)
            processed = 0
            batch: list[PostingAggregate] = []
            for key, amount in sums.items():
                batch.append(PostingAggregate(**key._asdict(), amount_cents=amount))
                processed += 1
                if len(batch) >= batch_size:
                    self.session.add_all(batch)
                    self.session.flush()
                    batch = []
                    if progress_callback:
                        progress_callback(processed, total)
            if batch:
                self.session.add_all(batch)
                self.session.flush()
            if progress_callback:
                progress_callback(total, total)

            self._recompute_account_balances(owned[PostingKind.bank])
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"aggregate_rebuild_done: user_id={user_id} "
            f"postings={len(postings)} aggregates={total}"
        )
        return total

    def _check_partitioning(self, row) -> None:
        expected = KIND_REFERENCE_COLUMNS[row.kind]
        present = [
            column
            for column in KIND_REFERENCE_COLUMNS.values()
            if getattr(row, column) is not None
        ]
        if present != [expected]:
            logger.error(
                f"aggregate_partition_violation: posting_id={row.id} "
                f"kind={row.kind.value} references={present}"
            )
            raise AggregateConsistencyError(
                f"Posting {row.id} must reference exactly its {row.kind.value} entity"
            )

    def _check_group_ownership(
        self, postings, owned: dict[PostingKind, list[int]]
    ) -> None:
        if not any(row.group_id for row in postings):
            return
        owned_ids = {row.id for row in postings}
        owner_postings = aliased(Posting)
        owned_groups = select(owner_postings.group_id).where(
            _owned_scope(owner_postings, owned),
            owner_postings.group_id.is_not(None),
        )
        members = self.session.execute(
            select(Posting.id, Posting.group_id).where(
                Posting.group_id.in_(owned_groups)
            )
        ).all()
        foreign = next((row for row in members if row.id not in owned_ids), None)
        if foreign is not None:
            logger.error(
                f"aggregate_group_conflict: group_id={foreign.group_id} "
                f"foreign_posting_id={foreign.id}"
            )
            raise AggregateConsistencyError(
                f"Posting group {foreign.group_id} is shared with another owner"
            )

    def _recompute_account_balances(self, account_ids: list[int]) -> None:
        if not account_ids:
            return
        totals = dict(
            self.session.execute(
                select(Posting.account_id, func.sum(Posting.amount_cents))
                .where(
                    Posting.kind == PostingKind.bank,
                    Posting.account_id.in_(account_ids),
                )
                .group_by(Posting.account_id)
            ).all()
        )
        for account in self.session.scalars(
            select(Account).where(Account.id.in_(account_ids))
        ):
            account.current_balance_cents = int(totals.get(account.id) or 0)
        self.session.flush()


@dataclass(frozen=True)
class AggregatePoint:
    period_start: date
    amount_cents: int


def clamp_series_take(period: AggregatePeriod, take: int) -> int:
    if take <= 0:
        take = DEFAULT_SERIES_TAKE[period]
    return max(1, min(take, MAX_SERIES_TAKE))


def series_floor(max_years_back: Optional[int], today: date) -> Optional[date]:
    if max_years_back is None:
        return None
    years = max(1, min(max_years_back, MAX_YEARS_BACK))
    return date(today.year - years, today.month, 1)


class PostingTimeSeriesService:
    def __init__(self, session: Session, today: Optional[date] = None) -> None:
        self.session = session
        self.today = today

    def get(
        self,
        owner_user_id: int,
        kind: PostingKind,
        entity_id: int,
        period: AggregatePeriod,
        take: int,
        max_years_back: Optional[int] = None,
        date_kind: AggregateDateKind = AggregateDateKind.booking,
    ) -> Optional[list[AggregatePoint]]:
        """Series for one entity, or None when the caller does not own it."""
        model = OWNER_MODELS[kind]
        owned = self.session.scalar(
            select(model.id).where(model.id == entity_id, model.user_id == owner_user_id)
        )
        if owned is None:
            return None
        return self._series(
            kind,
            _reference_column(PostingAggregate, kind) == entity_id,
            period,
            take,
            max_years_back,
            date_kind,
        )

    def get_all(
        self,
        owner_user_id: int,
        kind: PostingKind,
        period: AggregatePeriod,
        take: int,
        max_years_back: Optional[int] = None,
        date_kind: AggregateDateKind = AggregateDateKind.booking,
    ) -> list[AggregatePoint]:
        model = OWNER_MODELS[kind]
        owned_ids = select(model.id).where(model.user_id == owner_user_id)
        return self._series(
            kind,
            _reference_column(PostingAggregate, kind).in_(owned_ids),
            period,
            take,
            max_years_back,
            date_kind,
        )

    def _series(
        self,
        kind: PostingKind,
        scope,
        period: AggregatePeriod,
        take: int,
        max_years_back: Optional[int],
        date_kind: AggregateDateKind,
    ) -> list[AggregatePoint]:
        stmt = (
            select(
                PostingAggregate.period_start,
                func.sum(PostingAggregate.amount_cents).label("amount_cents"),
            )
            .where(
                PostingAggregate.kind == kind,
                PostingAggregate.period == period,
                PostingAggregate.date_kind == date_kind,
                scope,
            )
            .group_by(PostingAggregate.period_start)
            .order_by(PostingAggregate.period_start.desc())
            .limit(clamp_series_take(period, take))
        )
        floor = series_floor(max_years_back, self.today or local_today())
        if floor is not None:
            stmt = stmt.where(PostingAggregate.period_start >= floor)
        rows = self.session.execute(stmt).all()
        return [
            AggregatePoint(period_start=row.period_start, amount_cents=int(row.amount_cents))
            for row in reversed(rows)
        ]


class _SourceRow(NamedTuple):
    kind: PostingKind
    period_start: date
    entity_id: int
    security_sub_type: Optional[SecurityPostingSubType]
    amount_cents: int


def _entity_allow_lists(filters: ReportAggregationFilters) -> dict:
    return {
        PostingKind.bank: filters.account_ids,
        PostingKind.contact: filters.contact_ids,
        PostingKind.savings_plan: filters.savings_plan_ids,
        PostingKind.security: filters.security_ids,
    }


def _category_allow_lists(filters: ReportAggregationFilters) -> dict:
    return {
        PostingKind.contact: filters.contact_category_ids,
        PostingKind.savings_plan: filters.savings_plan_category_ids,
        PostingKind.security: filters.security_category_ids,
    }


def _allowed_entities(
    kinds: list[PostingKind],
    include_category: bool,
    filters: ReportAggregationFilters,
    owned: dict[PostingKind, dict[int, OwnedEntity]],
) -> dict[PostingKind, set[int]]:
    entity_lists = _entity_allow_lists(filters)
    category_lists = _category_allow_lists(filters)
    allowed: dict[PostingKind, set[int]] = {}
    for kind in kinds:
        category_ids = category_lists.get(kind) if include_category else None
        if category_ids:
            wanted = set(category_ids)
            allowed[kind] = {
                entity_id
                for entity_id, entity in owned[kind].items()
                if entity.category_id in wanted
            }
        elif entity_lists[kind]:
            allowed[kind] = set(entity_lists[kind])
    return allowed


class ReportAggregationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def query(self, query: ReportAggregationQuery) -> ReportAggregationResult:
        kinds = query.kinds()
        filters = query.filters or ReportAggregationFilters()
        analysis = normalize_analysis_date(query.analysis_date)

        trigger = self._dividend_net_trigger(kinds, query.interval, filters)
        if trigger:
            logger.info(
                f"report_query_dividend_net: user_id={query.owner_user_id} "
                f"trigger={trigger}"
            )
            return self._query_dividends_net(query, analysis, filters)

        empty = ReportAggregationResult(
            interval=query.interval,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
        )
        owned = {
            kind: load_owned_entities(self.session, query.owner_user_id, kind)
            for kind in kinds
        }
        date_kind = (
            AggregateDateKind.valuta if query.use_valuta_date else AggregateDateKind.booking
        )
        rows = self._load_rows(
            kinds, interval_source_period(query.interval), date_kind, owned
        )
        if not rows:
            return empty
        rows = self._apply_filters(rows, kinds, query.include_category, filters, owned)

        points = build_hierarchy(
            (
                EntityRow(row.kind, row.period_start, row.entity_id, row.amount_cents)
                for row in rows
            ),
            owned,
            multi=len(kinds) > 1,
            include_category=query.include_category,
        )
        points = finalize_points(
            points,
            interval=query.interval,
            analysis=analysis,
            take=query.take,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
        )
        logger.debug(
            f"report_query: user_id={query.owner_user_id} "
            f"kinds={[kind.value for kind in kinds]} "
            f"interval={query.interval.value} points={len(points)}"
        )
        return ReportAggregationResult(
            interval=query.interval,
            points=points,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
        )

    @staticmethod
    def _dividend_net_trigger(
        kinds: list[PostingKind],
        interval: ReportInterval,
        filters: ReportAggregationFilters,
    ) -> Optional[str]:
        if kinds != [PostingKind.security]:
            return None
        if filters.include_dividend_related:
            return "include_dividend_related"
        if interval == ReportInterval.ytd and SecurityPostingSubType.dividend in (
            filters.security_sub_types or []
        ):
            return "ytd_dividend_sub_type"
        return None

    def _load_rows(
        self,
        kinds: list[PostingKind],
        period: AggregatePeriod,
        date_kind: AggregateDateKind,
        owned: dict[PostingKind, dict[int, OwnedEntity]],
    ) -> list[_SourceRow]:
        scopes = [
            and_(
                PostingAggregate.kind == kind,
                _reference_column(PostingAggregate, kind).in_(list(owned[kind])),
            )
            for kind in kinds
            if owned[kind]
        ]
        if not scopes:
            return []
        result = self.session.execute(
            select(
                PostingAggregate.kind,
                PostingAggregate.account_id,
                PostingAggregate.contact_id,
                PostingAggregate.savings_plan_id,
                PostingAggregate.security_id,
                PostingAggregate.security_sub_type,
                PostingAggregate.period_start,
                PostingAggregate.amount_cents,
            ).where(
                PostingAggregate.period == period,
                PostingAggregate.date_kind == date_kind,
                or_(*scopes),
            )
        )
        rows: list[_SourceRow] = []
        for row in result:
            entity_id = getattr(row, KIND_REFERENCE_COLUMNS[row.kind])
            if entity_id is None or entity_id not in owned.get(row.kind, {}):
                continue
            rows.append(
                _SourceRow(
                    row.kind,
                    row.period_start,
                    entity_id,
                    row.security_sub_type,
                    row.amount_cents,
                )
            )
        return rows

    @staticmethod
    def _apply_filters(
        rows: list[_SourceRow],
        kinds: list[PostingKind],
        include_category: bool,
        filters: ReportAggregationFilters,
        owned: dict[PostingKind, dict[int, OwnedEntity]],
    ) -> list[_SourceRow]:
        allowed = _allowed_entities(kinds, include_category, filters, owned)
        sub_types = None
        if PostingKind.security in kinds and filters.security_sub_types:
            sub_types = set(filters.security_sub_types)
        if not allowed and sub_types is None:
            return rows

        kept = []
        for row in rows:
            if row.kind in allowed and row.entity_id not in allowed[row.kind]:
                continue
            if (
                sub_types is not None
                and row.kind == PostingKind.security
                and row.security_sub_type not in sub_types
            ):
                continue
            kept.append(row)
        return kept

    def _query_dividends_net(
        self,
        query: ReportAggregationQuery,
        analysis: date,
        filters: ReportAggregationFilters,
    ) -> ReportAggregationResult:
        """Dividends net of the fee and tax legs booked in the same group."""
        result = ReportAggregationResult(
            interval=query.interval,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
        )
        securities = load_owned_entities(
            self.session, query.owner_user_id, PostingKind.security
        )
        if not securities:
            return result

        months_back = query.take - 1 if query.take > 0 else 0
        window_start = add_months(analysis, -months_back)
        window_end = add_months(analysis, 1)
        postings = self.session.execute(
            select(
                Posting.id,
                Posting.security_id,
                Posting.booking_date,
                Posting.amount_cents,
                Posting.security_sub_type,
                Posting.group_id,
            )
            .where(
                Posting.kind == PostingKind.security,
                Posting.security_id.in_(list(securities)),
                Posting.booking_date >= window_start,
                Posting.booking_date < window_end,
                Posting.security_sub_type.is_not(None),
            )
            .order_by(Posting.booking_date, Posting.id)
        ).all()

        groups: dict[str, list] = {}
        for posting in postings:
            group = posting.group_id or f"posting:{posting.id}"
            groups.setdefault(group, []).append(posting)

        buckets: dict[tuple[date, int], int] = {}
        for legs in groups.values():
            dividends = [
                leg for leg in legs if leg.security_sub_type == SecurityPostingSubType.dividend
            ]
            if not dividends:
                continue
            anchor = dividends[0]
            net = sum(
                leg.amount_cents for leg in legs if leg.security_sub_type in NET_LEG_SUB_TYPES
            )
            bucket = (month_start(anchor.booking_date), anchor.security_id)
            buckets[bucket] = buckets.get(bucket, 0) + net

        allowed = _allowed_entities(
            [PostingKind.security],
            query.include_category,
            filters,
            {PostingKind.security: securities},
        ).get(PostingKind.security)
        rows = [
            EntityRow(PostingKind.security, start, security_id, amount)
            for (start, security_id), amount in buckets.items()
            if allowed is None or security_id in allowed
        ]
        points = build_hierarchy(
            rows,
            {PostingKind.security: securities},
            multi=False,
            include_category=query.include_category,
        )
        points = finalize_points(
            points,
            interval=query.interval,
            analysis=analysis,
            take=query.take,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
            regroup_months=True,
        )
        return ReportAggregationResult(
            interval=query.interval,
            points=points,
            compare_previous=query.compare_previous,
            compare_year=query.compare_year,
        )


class PostingService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: PostingIn) -> Posting:
        expected = KIND_REFERENCE_COLUMNS[data.kind]
        references = {
            column: getattr(data, column) for column in KIND_REFERENCE_COLUMNS.values()
        }
        present = [column for column, value in references.items() if value is not None]
        if present != [expected]:
            raise ValueError(f"Posting must reference exactly one {data.kind.value}")
        if data.security_sub_type is not None and data.kind != PostingKind.security:
            raise ValueError("Only security postings can carry a sub type")

        model = OWNER_MODELS[data.kind]
        entity = self.session.get(model, references[expected])
        if not entity or entity.user_id != self.user_id:
            raise ValueError(f"{model.__name__} not found")

        posting = Posting(
            kind=data.kind,
            booking_date=data.booking_date,
            valuta_date=data.valuta_date,
            amount_cents=data.amount_cents,
            security_sub_type=data.security_sub_type,
            group_id=data.group_id,
            quantity=data.quantity,
            subject=data.subject,
            description=data.description,
            **references,
        )
        self.session.add(posting)
        self.session.flush()
        PostingAggregateService(self.session).upsert_for_posting(posting)
        if data.kind == PostingKind.bank:
            entity.current_balance_cents += data.amount_cents
        self.session.commit()
        self.session.refresh(posting)
        logger.info(
            f"posting_created: user_id={self.user_id} posting_id={posting.id} "
            f"kind={posting.kind.value}"
        )
        return posting
