from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import CategoryType
from money import MAX_AMOUNT

GridTypeFilter = Literal["all", "expense", "income"]


class PeriodIn(BaseModel):
    month: int = Field(..., ge=0, le=11)
    year: int = Field(..., ge=2000, le=2100)


class OptionalPeriodIn(BaseModel):
    month: Optional[int] = Field(default=None, ge=0, le=11)
    year: Optional[int] = Field(default=None, ge=2000, le=2100)


class ProvisionIn(BaseModel):
    id: Optional[int] = None
    category_id: int
    period: PeriodIn
    planned_amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    note: Optional[str] = Field(default=None, max_length=2000)


class BulkUpsertEntryIn(BaseModel):
    category_id: int
    planned_amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    note: Optional[str] = Field(default=None, max_length=2000)


class BulkUpsertIn(BaseModel):
    period: PeriodIn
    entries: list[BulkUpsertEntryIn] = Field(..., min_length=1)


class CopyIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: PeriodIn = Field(..., alias="from")
    to: PeriodIn
    overwrite: bool = False
    category_ids: Optional[list[int]] = None


class BulkSetValueIn(BaseModel):
    period: PeriodIn
    category_ids: list[int] = Field(..., min_length=1)
    mode: Literal["absolute", "relative"] = "absolute"
    value: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    note_strategy: Literal["keep", "replace"] = "keep"
    note: Optional[str] = Field(default=None, max_length=2000)


class BulkDistributeIn(BaseModel):
    period: PeriodIn
    category_ids: list[int] = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    strategy: Literal["equal", "historical"] = "equal"


class TemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=191)
    description: Optional[str] = Field(default=None, max_length=2000)
    period: PeriodIn
    category_ids: list[int] = Field(default_factory=list)


class ApplyTemplateIn(BaseModel):
    template_id: Optional[int] = None
    target: PeriodIn
    overwrite: bool = False
    category_ids: Optional[list[int]] = None


class CsvImportRowIn(BaseModel):
    category_id: Optional[int] = None
    category_name: Optional[str] = Field(default=None, max_length=191)
    month: int = Field(..., ge=0, le=11)
    year: int = Field(..., ge=2000, le=2100)
    planned_amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    note: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _require_category_reference(self) -> "CsvImportRowIn":
        if self.category_id is None and not (self.category_name or "").strip():
            raise ValueError("Either category_id or category_name is required")
        return self


class CsvImportIn(BaseModel):
    rows: list[CsvImportRowIn] = Field(..., min_length=1)
    overwrite: bool = False


class RecurringRuleIn(BaseModel):
    id: Optional[int] = None
    category_id: int
    planned_amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT)
    start: PeriodIn
    end: Optional[PeriodIn] = None
    apply_automatically: bool = True
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurringRuleIn":
        if self.end is not None and (self.end.year, self.end.month) < (
            self.start.year,
            self.start.month,
        ):
            raise ValueError("End period must not be before start period")
        return self


class GridRowOut(BaseModel):
    id: int
    category_id: int
    name: str
    color: Optional[str]
    type: CategoryType
    parent_id: Optional[int]
    planned: float
    realized: float


class MetricsOut(BaseModel):
    month: int
    year: int
    planned_total: float
    realized_total: float
    remaining_total: float
    coverage: float
    over_budget_total: float


class ChartEntryOut(BaseModel):
    category_id: int
    name: str
    planned: float
    realized: float
    color: Optional[str]


class DistributionEntryOut(BaseModel):
    category_id: int
    name: str
    realized: float
    percentage: float
    color: Optional[str]


class AuditLogOut(BaseModel):
    id: int
    category_id: Optional[int]
    category_name: Optional[str]
    user_id: Optional[int]
    month: int
    year: int
    action: str
    previous_amount: Optional[str]
    new_amount: Optional[str]
    context: dict
    created_at: str


class TemplateItemOut(BaseModel):
    category_id: int
    planned_amount: str


class TemplateOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    source_month: int
    source_year: int
    items: list[TemplateItemOut]


class RecurringRuleOut(BaseModel):
    id: int
    category_id: int
    planned_amount: str
    start_month: int
    start_year: int
    end_month: Optional[int]
    end_year: Optional[int]
    apply_automatically: bool
    notes: Optional[str]
