import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from csv_utils import export_report_points
from database import SessionLocal
from models import AggregateDateKind, AggregatePeriod, PostingKind
from periods import normalize_analysis_date
from scheduler import SchedulerManager
from schemas import (
    AggregatePointOut,
    AggregateSeriesOut,
    PostingIn,
    PostingOut,
    RebuildTaskOut,
    ReportAggregationOut,
    ReportAggregationQuery,
    ReportPointOut,
    ReportQueryIn,
)
from services import (
    PostingService,
    PostingTimeSeriesService,
    ReportAggregationService,
    get_current_user_id as default_user_id,
)

app = FastAPI(title="Ledger Reports")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or default_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _series_out(kind, entity_id, period, date_kind, points) -> AggregateSeriesOut:
    return AggregateSeriesOut(
        kind=kind,
        entity_id=entity_id,
        period=period,
        date_kind=date_kind,
        points=[
            AggregatePointOut(period_start=p.period_start, amount_cents=p.amount_cents)
            for p in points
        ],
    )


@app.get("/api/aggregates/{kind}/{entity_id}", response_model=AggregateSeriesOut)
def api_entity_series(
    kind: PostingKind,
    entity_id: int,
    period: AggregatePeriod = AggregatePeriod.month,
    take: int = 0,
    max_years_back: Optional[int] = None,
    date_kind: AggregateDateKind = AggregateDateKind.booking,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    points = PostingTimeSeriesService(db).get(
        user_id, kind, entity_id, period, take, max_years_back, date_kind
    )
    if points is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    return _series_out(kind, entity_id, period, date_kind, points)


@app.get("/api/aggregates/{kind}", response_model=AggregateSeriesOut)
def api_kind_series(
    kind: PostingKind,
    period: AggregatePeriod = AggregatePeriod.month,
    take: int = 0,
    max_years_back: Optional[int] = None,
    date_kind: AggregateDateKind = AggregateDateKind.booking,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    points = PostingTimeSeriesService(db).get_all(
        user_id, kind, period, take, max_years_back, date_kind
    )
    return _series_out(kind, None, period, date_kind, points)


def _run_report(payload: ReportQueryIn, db: Session, user_id: int):
    query = ReportAggregationQuery(**payload.model_dump(), owner_user_id=user_id)
    return ReportAggregationService(db).query(query)


@app.post("/api/reports/query", response_model=ReportAggregationOut)
def api_report_query(
    payload: ReportQueryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    result = _run_report(payload, db, user_id)
    return ReportAggregationOut(
        interval=result.interval,
        compare_previous=result.compare_previous,
        compare_year=result.compare_year,
        points=[ReportPointOut.from_point(point) for point in result.points],
    )


@app.post("/api/reports/export.csv")
def api_report_export(
    payload: ReportQueryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    result = _run_report(payload, db, user_id)
    csv_text = export_report_points(result.points)
    analysis = normalize_analysis_date(payload.analysis_date)
    filename = f"report_{result.interval.value}_{analysis.isoformat()}.csv"
    logging.info(
        f"report_exported: user_id={user_id} interval={result.interval.value} "
        f"points={len(result.points)}"
    )
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/postings", response_model=PostingOut, status_code=201)
def api_create_posting(
    payload: PostingIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    try:
        posting = PostingService(db, user_id).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return posting


@app.post(
    "/api/admin/rebuild-aggregates", response_model=RebuildTaskOut, status_code=202
)
def api_enqueue_rebuild(user_id: int = Depends(get_current_user_id)):
    info = scheduler_manager.enqueue_rebuild(user_id)
    return RebuildTaskOut(**asdict(info))


@app.get("/api/admin/rebuild-aggregates", response_model=RebuildTaskOut)
def api_rebuild_status(user_id: int = Depends(get_current_user_id)):
    info = scheduler_manager.task_info(user_id)
    if info is None:
        raise HTTPException(status_code=404, detail="No rebuild task")
    return RebuildTaskOut(**asdict(info))
