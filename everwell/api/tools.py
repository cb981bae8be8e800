from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, joinedload

from everwell.api.auth import get_current_user
from everwell.core.csv_io import CsvImportError, parse_import_csv, write_export_csv
from everwell.core.errors import log_error
from everwell.core.metric_values import day_start
from everwell.db.models import Measurement, MetricDefinition, User
from everwell.db.session import get_db
from everwell.services.metrics_service import MetricsService, utc_today

router = APIRouter(prefix="/api/tools", tags=["tools"])


class ImportCsvRequest(BaseModel):
    csv_data: str = Field(default="", max_length=5_000_000)


class ImportCsvResponse(BaseModel):
    success: bool = True
    imported: int
    total: int


class ExportCsvRequest(BaseModel):
    metrics: list[str] = Field(default_factory=list)
    days: int = Field(default=30, ge=1, le=3650)
    include_details: bool = False


@router.post("/import-csv", response_model=ImportCsvResponse)
def import_csv(
    payload: ImportCsvRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not payload.csv_data.strip():
        raise HTTPException(status_code=400, detail="CSV data is required")

    definitions = {row.slug: row for row in db.query(MetricDefinition).all()}
    try:
        rows = parse_import_csv(payload.csv_data, definitions)
    except CsvImportError as exc:
        return JSONResponse(status_code=400, content={"error": exc.message, "details": exc.details})

    try:
        for row in rows:
            MetricsService.write_measurement(db, user.id, row.metric, row.day, row.value)
        db.commit()
    except Exception as exc:
        db.rollback()
        log_error("import-csv.insert", exc, user_id=user.id, count=len(rows))
        raise HTTPException(status_code=500, detail="Failed to insert measurements")

    return ImportCsvResponse(imported=len(rows), total=len(rows))


@router.post("/export-csv")
def export_csv(
    payload: ExportCsvRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    slugs = [slug.strip() for slug in payload.metrics if slug.strip()]
    if not slugs:
        raise HTTPException(status_code=400, detail="Metrics array is required")

    today = utc_today()
    start = day_start(today - timedelta(days=payload.days))
    rows = (
        db.query(Measurement)
        .join(MetricDefinition, Measurement.metric_id == MetricDefinition.id)
        .options(joinedload(Measurement.metric))
        .filter(
            Measurement.user_id == user.id,
            MetricDefinition.slug.in_(slugs),
            Measurement.measured_at >= start,
            Measurement.measured_at < day_start(today + timedelta(days=1)),
        )
        .order_by(Measurement.measured_at.asc(), MetricDefinition.sort_order.asc())
        .all()
    )
    csv_content = write_export_csv(rows, include_details=payload.include_details)
    return Response(
        content=csv_content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="everwell-export-{today.isoformat()}.csv"'},
    )
