import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import SessionLocal
from money import to_money_string
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    ApplyTemplateIn,
    AuditLogOut,
    BulkDistributeIn,
    BulkSetValueIn,
    BulkUpsertIn,
    ChartEntryOut,
    CopyIn,
    CsvImportIn,
    DistributionEntryOut,
    GridRowOut,
    GridTypeFilter,
    MetricsOut,
    OptionalPeriodIn,
    ProvisionIn,
    RecurringRuleIn,
    RecurringRuleOut,
    TemplateIn,
    TemplateItemOut,
    TemplateOut,
)
from services import (
    ApplyResult,
    CategoryNotFound,
    ChartService,
    CSVService,
    GridService,
    GroupNotResolved,
    HistoryService,
    MetricsService,
    ProvisionConflict,
    ProvisionNotFound,
    ProvisionService,
    RecurringProvisionService,
    RecurringRuleNotFound,
    TemplateNotFound,
    TemplateService,
    resolve_group_id,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Provisions")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@dataclass(frozen=True)
class RequestContext:
    user_id: int
    group_id: int


def get_context(
    x_user_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> RequestContext:
    user_id = x_user_id if x_user_id is not None else get_settings().default_user_id
    try:
        group_id = resolve_group_id(db, user_id)
    except GroupNotResolved as exc:
        raise HTTPException(status_code=412, detail=str(exc)) from exc
    return RequestContext(user_id=user_id, group_id=group_id)


def require_csrf(
    x_csrf_token: Optional[str] = Header(default=None),
    ctx: RequestContext = Depends(get_context),
) -> RequestContext:
    if not validate_csrf_token(x_csrf_token, ctx.user_id, ctx.group_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return ctx


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(
        exc,
        (CategoryNotFound, ProvisionNotFound, TemplateNotFound, RecurringRuleNotFound),
    ):
        status = 404
    elif isinstance(exc, ProvisionConflict):
        status = 409
    elif isinstance(exc, GroupNotResolved):
        status = 412
    else:
        status = 400
    return HTTPException(status_code=status, detail=str(exc))


def _conflict(exc: IntegrityError) -> HTTPException:
    logger.warning(f"provisions_integrity_error: {exc.orig}")
    return HTTPException(
        status_code=409, detail="A provision already exists for this category and period"
    )


def period_from_query(
    month: Optional[int] = Query(default=None, ge=0, le=11),
    year: Optional[int] = Query(default=None, ge=2000, le=2100),
) -> Period:
    return resolve_period(month, year)


def _period(data) -> Period:
    return Period(month=data.month, year=data.year)


def _apply_result(result: ApplyResult) -> dict:
    return {
        "count": result.count,
        "inserted": result.inserted,
        "updated": result.updated,
        "skipped": result.skipped,
    }


def _template_out(template) -> TemplateOut:
    return TemplateOut(
        id=template.id,
        name=template.name,
        description=template.description,
        source_month=template.source_month,
        source_year=template.source_year,
        items=[
            TemplateItemOut(
                category_id=item.category_id,
                planned_amount=to_money_string(item.planned_amount),
            )
            for item in template.items
        ],
    )


def _rule_out(rule) -> RecurringRuleOut:
    return RecurringRuleOut(
        id=rule.id,
        category_id=rule.category_id,
        planned_amount=to_money_string(rule.planned_amount),
        start_month=rule.start_month,
        start_year=rule.start_year,
        end_month=rule.end_month,
        end_year=rule.end_year,
        apply_automatically=rule.apply_automatically,
        notes=rule.notes,
    )


@app.get("/api/csrf-token")
def api_csrf_token(ctx: RequestContext = Depends(get_context)):
    return {"token": generate_csrf_token(ctx.user_id, ctx.group_id)}


@app.get("/api/provisions/grid")
def api_grid(
    period: Period = Depends(period_from_query),
    include_inactive: bool = False,
    type: GridTypeFilter = "all",
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    rows = GridService(db, ctx.group_id).fetch(
        period, include_inactive=include_inactive, category_type=type
    )
    return {
        "month": period.month,
        "year": period.year,
        "rows": [
            GridRowOut(
                id=row.id,
                category_id=row.category_id,
                name=row.name,
                color=row.color,
                type=row.type,
                parent_id=row.parent_id,
                planned=float(row.planned),
                realized=float(row.realized),
            )
            for row in rows
        ],
    }


@app.get("/api/provisions/metrics", response_model=MetricsOut)
def api_metrics(
    period: Period = Depends(period_from_query),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    metrics = MetricsService(db, ctx.group_id).fetch(period)
    return MetricsOut(
        month=metrics.month,
        year=metrics.year,
        planned_total=float(metrics.planned_total),
        realized_total=float(metrics.realized_total),
        remaining_total=float(metrics.remaining_total),
        coverage=float(metrics.coverage),
        over_budget_total=float(metrics.over_budget_total),
    )


@app.get("/api/provisions/charts/planned-vs-actual", response_model=list[ChartEntryOut])
def api_planned_vs_actual(
    period: Period = Depends(period_from_query),
    limit: int = Query(default=6, ge=1, le=50),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    entries = ChartService(db, ctx.group_id).planned_vs_actual(period, limit=limit)
    return [
        ChartEntryOut(
            category_id=entry.category_id,
            name=entry.name,
            planned=float(entry.planned),
            realized=float(entry.realized),
            color=entry.color,
        )
        for entry in entries
    ]


@app.get(
    "/api/provisions/charts/expense-distribution",
    response_model=list[DistributionEntryOut],
)
def api_expense_distribution(
    period: Period = Depends(period_from_query),
    limit: int = Query(default=6, ge=1, le=50),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    entries = ChartService(db, ctx.group_id).expense_distribution(period, limit=limit)
    return [
        DistributionEntryOut(
            category_id=entry.category_id,
            name=entry.name,
            realized=float(entry.realized),
            percentage=float(entry.percentage),
            color=entry.color,
        )
        for entry in entries
    ]


@app.post("/api/provisions")
def api_upsert_provision(
    data: ProvisionIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        provision = ProvisionService(db, ctx.group_id, ctx.user_id).upsert(data)
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "id": provision.id,
        "category_id": provision.category_id,
        "month": provision.month,
        "year": provision.year,
        "planned_amount": float(provision.planned_amount),
        "note": provision.note,
    }


@app.delete("/api/provisions/{provision_id}")
def api_delete_provision(
    provision_id: int,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        ProvisionService(db, ctx.group_id, ctx.user_id).delete(provision_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"deleted": provision_id}


@app.post("/api/provisions/bulk-upsert")
def api_bulk_upsert(
    data: BulkUpsertIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        result = ProvisionService(db, ctx.group_id, ctx.user_id).bulk_upsert(
            _period(data.period), data.entries
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "count": result.count,
        "updated": [
            {
                "category_id": entry.category_id,
                "planned_amount": float(entry.planned_amount),
                "note": entry.note,
            }
            for entry in result.updated
        ],
    }


@app.post("/api/provisions/bulk-set-value")
def api_bulk_set_value(
    data: BulkSetValueIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        result = ProvisionService(db, ctx.group_id, ctx.user_id).bulk_set_value(
            _period(data.period),
            data.category_ids,
            mode=data.mode,
            value=data.value,
            note_strategy=data.note_strategy,
            note=data.note,
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.post("/api/provisions/bulk-distribute")
def api_bulk_distribute(
    data: BulkDistributeIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        result = ProvisionService(db, ctx.group_id, ctx.user_id).bulk_distribute(
            _period(data.period),
            data.category_ids,
            amount=data.amount,
            strategy=data.strategy,
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.post("/api/provisions/copy")
def api_copy(
    data: CopyIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        result = ProvisionService(db, ctx.group_id, ctx.user_id).copy_from_previous(
            _period(data.from_),
            _period(data.to),
            overwrite=data.overwrite,
            category_ids=data.category_ids,
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.get("/api/provisions/templates", response_model=list[TemplateOut])
def api_list_templates(
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return [
        _template_out(template)
        for template in TemplateService(db, ctx.group_id, ctx.user_id).list_all()
    ]


@app.post("/api/provisions/templates", response_model=TemplateOut)
def api_upsert_template(
    data: TemplateIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        template = TemplateService(db, ctx.group_id, ctx.user_id).upsert(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _template_out(template)


@app.post("/api/provisions/templates/{template_id}/apply")
def api_apply_template(
    template_id: int,
    data: ApplyTemplateIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    data = data.model_copy(update={"template_id": template_id})
    try:
        result = TemplateService(db, ctx.group_id, ctx.user_id).apply(data)
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.delete("/api/provisions/templates/{template_id}")
def api_delete_template(
    template_id: int,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        TemplateService(db, ctx.group_id, ctx.user_id).delete(template_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"deleted": template_id}


@app.post("/api/provisions/import-csv")
def api_import_rows(
    data: CsvImportIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        result = ProvisionService(db, ctx.group_id, ctx.user_id).import_rows(
            data.rows, overwrite=data.overwrite
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.post("/api/provisions/import-csv/file")
async def api_import_file(
    file: UploadFile = File(...),
    overwrite: bool = Form(False),
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded") from exc
    try:
        result = CSVService(db, ctx.group_id, ctx.user_id).import_csv(
            content, overwrite=overwrite
        )
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _apply_result(result)


@app.get("/api/provisions/export.csv")
def api_export_csv(
    period: Period = Depends(period_from_query),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    csv_text = CSVService(db, ctx.group_id, ctx.user_id).export(period)
    filename = f"provisions_{period.year}_{period.month + 1:02d}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/provisions/history", response_model=list[AuditLogOut])
def api_history(
    period: Period = Depends(period_from_query),
    limit: int = Query(default=20, ge=1, le=100),
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    entries = HistoryService(db, ctx.group_id).fetch(period, limit=limit)
    return [
        AuditLogOut(
            id=entry.id,
            category_id=entry.category_id,
            category_name=entry.category.name if entry.category else None,
            user_id=entry.user_id,
            month=entry.month,
            year=entry.year,
            action=entry.action,
            previous_amount=to_money_string(entry.previous_amount)
            if entry.previous_amount is not None
            else None,
            new_amount=to_money_string(entry.new_amount)
            if entry.new_amount is not None
            else None,
            context=entry.context or {},
            created_at=entry.created_at.isoformat(),
        )
        for entry in entries
    ]


@app.get("/api/provisions/recurring-rules", response_model=list[RecurringRuleOut])
def api_list_recurring_rules(
    ctx: RequestContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    return [
        _rule_out(rule)
        for rule in RecurringProvisionService(db, ctx.group_id, ctx.user_id).list_all()
    ]


@app.post("/api/provisions/recurring-rules", response_model=RecurringRuleOut)
def api_upsert_recurring_rule(
    data: RecurringRuleIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        rule = RecurringProvisionService(db, ctx.group_id, ctx.user_id).upsert(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _rule_out(rule)


@app.delete("/api/provisions/recurring-rules/{rule_id}")
def api_delete_recurring_rule(
    rule_id: int,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    try:
        RecurringProvisionService(db, ctx.group_id, ctx.user_id).delete(rule_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"deleted": rule_id}


@app.post("/api/provisions/recurring-rules/apply")
def api_apply_recurring_rules(
    data: OptionalPeriodIn,
    ctx: RequestContext = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    period = resolve_period(data.month, data.year)
    try:
        result = RecurringProvisionService(
            db, ctx.group_id, ctx.user_id
        ).apply_for_period(period)
    except IntegrityError as exc:
        raise _conflict(exc) from exc
    return _apply_result(result)
