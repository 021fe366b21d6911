from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from csv_utils import (
    CsvExportRow,
    CsvProvisionRow,
    export_provisions_csv,
    parse_provisions_csv,
)
from database import atomic
from models import (
    Category,
    CategoryType,
    GroupMember,
    Provision,
    ProvisionAuditLog,
    ProvisionRecurringRule,
    ProvisionTemplate,
    ProvisionTemplateItem,
    Transaction,
    TransactionType,
)
from money import (
    ZERO,
    allocate,
    normalize_note,
    normalize_planned_amount,
    round_money,
    to_money_string,
    to_number,
)
from periods import (
    Period,
    create_month_range,
    period_ordinal,
    previous_period,
    resolve_period,
    shift_period,
)
from schemas import (
    ApplyTemplateIn,
    BulkUpsertEntryIn,
    CsvImportRowIn,
    ProvisionIn,
    RecurringRuleIn,
    TemplateIn,
)
from tree import CategoryMeta, aggregate_tree, build_tree

logger = logging.getLogger(__name__)


class CategoryNotFound(ValueError):
    pass


class ProvisionNotFound(ValueError):
    pass


class TemplateNotFound(ValueError):
    pass


class RecurringRuleNotFound(ValueError):
    pass


class ProvisionConflict(ValueError):
    pass


class CsvImportError(ValueError):
    pass


class GroupNotResolved(ValueError):
    pass


def resolve_group_id(session: Session, user_id: int) -> int:
    membership = session.scalar(
        select(GroupMember)
        .where(GroupMember.user_id == user_id)
        .order_by(GroupMember.id)
        .limit(1)
    )
    if membership is None:
        raise GroupNotResolved("No financial group found for this user")
    return membership.group_id


# ---------------------------------------------------------------------------
# Category dictionary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryDictionaryEntry:
    id: int
    group_id: int
    parent_id: Optional[int]
    name: str
    type: CategoryType
    color: Optional[str]
    icon: str
    is_active: bool
    path: tuple[str, ...]
    depth: int


CategoryDictionary = dict[int, CategoryDictionaryEntry]


def _collation_key(name: str) -> str:
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _sorted_siblings(nodes: Iterable[Category]) -> list[Category]:
    return sorted(nodes, key=lambda c: (_collation_key(c.name), c.name, c.id))


def load_category_dictionary(session: Session, group_id: int) -> CategoryDictionary:
    """
    Load every category of a group keyed by id, in tree pre-order.

    Each entry carries its ancestor ``path`` (ending with its own name) and
    ``depth`` (0 for roots). Siblings are ordered by an accent- and
    case-insensitive name key. Categories that cannot be reached from a root
    (dangling parent, cycles) are left out.
    """
    rows = session.scalars(select(Category).where(Category.group_id == group_id)).all()

    children: dict[Optional[int], list[Category]] = {}
    for row in rows:
        children.setdefault(row.parent_id, []).append(row)

    dictionary: CategoryDictionary = {}
    visited: set[int] = set()
    stack: list[tuple[Category, tuple[str, ...]]] = [
        (root, ()) for root in reversed(_sorted_siblings(children.get(None, [])))
    ]
    while stack:
        node, ancestors = stack.pop()
        if node.id in visited:
            continue
        visited.add(node.id)
        path = ancestors + (node.name,)
        dictionary[node.id] = CategoryDictionaryEntry(
            id=node.id,
            group_id=node.group_id,
            parent_id=node.parent_id,
            name=node.name,
            type=node.type,
            color=node.color,
            icon=node.icon,
            is_active=node.is_active,
            path=path,
            depth=len(ancestors),
        )
        for child in reversed(_sorted_siblings(children.get(node.id, []))):
            stack.append((child, path))

    unreachable = len(rows) - len(dictionary)
    if unreachable:
        logger.warning(
            f"category_dictionary: group={group_id} unreachable_categories={unreachable}"
        )
    return dictionary


def ensure_category_ids(
    dictionary: CategoryDictionary, ids: Optional[Sequence[int]] = None
) -> list[int]:
    if not ids:
        return list(dictionary.keys())
    return [category_id for category_id in ids if category_id in dictionary]


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _money_or_none(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(to_money_string(value))


def record_provision_audit_log(
    session: Session,
    *,
    group_id: int,
    user_id: Optional[int],
    category_id: Optional[int],
    month: int,
    year: int,
    action: str,
    previous_amount: Any = None,
    new_amount: Any = None,
    context: Optional[dict[str, Any]] = None,
) -> ProvisionAuditLog:
    """Append one audit row to the session; the caller owns the transaction."""
    entry = ProvisionAuditLog(
        group_id=group_id,
        user_id=user_id,
        category_id=category_id,
        month=month,
        year=year,
        action=action,
        previous_amount=_money_or_none(previous_amount),
        new_amount=_money_or_none(new_amount),
        context=dict(context) if context else {},
    )
    session.add(entry)
    return entry


class HistoryService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def fetch(
        self, period: Optional[Period] = None, limit: int = 20
    ) -> list[ProvisionAuditLog]:
        resolved = period or resolve_period()
        limit = min(max(limit, 1), 100)
        stmt = (
            select(ProvisionAuditLog)
            .options(joinedload(ProvisionAuditLog.category))
            .where(
                ProvisionAuditLog.group_id == self.group_id,
                ProvisionAuditLog.month == resolved.month,
                ProvisionAuditLog.year == resolved.year,
            )
            .order_by(ProvisionAuditLog.created_at.desc(), ProvisionAuditLog.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


# ---------------------------------------------------------------------------
# Grid, metrics and charts
# ---------------------------------------------------------------------------


def realized_by_category(
    session: Session,
    group_id: int,
    start: datetime,
    end: datetime,
    category_ids: Sequence[int],
) -> dict[int, dict[str, Decimal]]:
    """Paid transaction totals per category, split into income/expense buckets."""
    if not category_ids:
        return {}
    stmt = (
        select(
            Transaction.category_id,
            Transaction.type,
            func.sum(Transaction.amount).label("amount"),
        )
        .where(
            Transaction.group_id == group_id,
            Transaction.is_paid.is_(True),
            Transaction.date >= start,
            Transaction.date <= end,
            Transaction.category_id.in_(list(category_ids)),
        )
        .group_by(Transaction.category_id, Transaction.type)
    )
    realized: dict[int, dict[str, Decimal]] = {}
    for row in session.execute(stmt):
        if row.category_id is None:
            continue
        bucket = realized.setdefault(row.category_id, {"income": ZERO, "expense": ZERO})
        if row.type == TransactionType.income:
            bucket["income"] += to_number(row.amount)
        elif row.type == TransactionType.expense:
            bucket["expense"] += to_number(row.amount)
    return realized


def _provisions_for_period(
    session: Session,
    group_id: int,
    period: Period,
    category_ids: Optional[Sequence[int]] = None,
) -> dict[int, Provision]:
    stmt = select(Provision).where(
        Provision.group_id == group_id,
        Provision.month == period.month,
        Provision.year == period.year,
    )
    if category_ids is not None:
        if not category_ids:
            return {}
        stmt = stmt.where(Provision.category_id.in_(list(category_ids)))
    return {row.category_id: row for row in session.scalars(stmt)}


@dataclass(frozen=True)
class ProvisionsGridRow:
    id: int
    category_id: int
    name: str
    color: Optional[str]
    type: CategoryType
    parent_id: Optional[int]
    planned: Decimal
    realized: Decimal


class GridService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def fetch(
        self,
        period: Optional[Period] = None,
        *,
        include_inactive: bool = False,
        category_type: str = "all",
    ) -> list[ProvisionsGridRow]:
        resolved = period or resolve_period()
        start, end = create_month_range(resolved)

        dictionary = load_category_dictionary(self.session, self.group_id)
        categories = [
            entry
            for entry in dictionary.values()
            if (include_inactive or entry.is_active)
            and (category_type == "all" or entry.type.value == category_type)
        ]
        if not categories:
            return []

        category_ids = [entry.id for entry in categories]
        planned = _provisions_for_period(
            self.session, self.group_id, resolved, category_ids
        )
        realized = realized_by_category(
            self.session, self.group_id, start, end, category_ids
        )

        rows: list[ProvisionsGridRow] = []
        for entry in categories:
            provision = planned.get(entry.id)
            bucket = realized.get(entry.id, {})
            rows.append(
                ProvisionsGridRow(
                    id=entry.id,
                    category_id=entry.id,
                    name=entry.name,
                    color=entry.color,
                    type=entry.type,
                    parent_id=entry.parent_id,
                    planned=round_money(provision.planned_amount if provision else 0),
                    realized=round_money(bucket.get(entry.type.value, ZERO)),
                )
            )
        return rows


@dataclass(frozen=True)
class ProvisionsMetrics:
    month: int
    year: int
    planned_total: Decimal
    realized_total: Decimal
    remaining_total: Decimal
    coverage: Decimal
    over_budget_total: Decimal


class MetricsService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def fetch(self, period: Optional[Period] = None) -> ProvisionsMetrics:
        resolved = period or resolve_period()
        start, end = create_month_range(resolved)

        in_period = (
            Provision.group_id == self.group_id,
            Provision.month == resolved.month,
            Provision.year == resolved.year,
        )
        paid_in_month = (
            Transaction.group_id == self.group_id,
            Transaction.is_paid.is_(True),
            Transaction.date >= start,
            Transaction.date <= end,
        )

        planned_total = to_number(
            self.session.execute(
                select(func.coalesce(func.sum(Provision.planned_amount), 0)).where(
                    *in_period
                )
            ).scalar_one()
        )
        # every paid transaction counts, transfers included
        realized_total = to_number(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    *paid_in_month
                )
            ).scalar_one()
        )
        # paid spending that landed on a category with a provision this month
        over_budget_total = to_number(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    *paid_in_month,
                    Transaction.category_id.in_(
                        select(Provision.category_id).where(*in_period)
                    ),
                )
            ).scalar_one()
        )

        coverage = (
            ZERO
            if planned_total == 0
            else round_money(realized_total / planned_total * 100)
        )
        return ProvisionsMetrics(
            month=resolved.month,
            year=resolved.year,
            planned_total=round_money(planned_total),
            realized_total=round_money(realized_total),
            remaining_total=round_money(planned_total - realized_total),
            coverage=coverage,
            over_budget_total=round_money(over_budget_total),
        )


@dataclass(frozen=True)
class PlannedVsActualEntry:
    category_id: int
    name: str
    planned: Decimal
    realized: Decimal
    color: Optional[str]


@dataclass(frozen=True)
class DistributionEntry:
    category_id: int
    name: str
    realized: Decimal
    percentage: Decimal
    color: Optional[str]


class ChartService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def _aggregated_roots(self, period: Optional[Period], category_type: CategoryType):
        rows = GridService(self.session, self.group_id).fetch(
            period, include_inactive=False, category_type=category_type.value
        )
        metadata = {
            row.category_id: CategoryMeta(type=row.type, parent_id=row.parent_id)
            for row in rows
        }
        roots = build_tree(rows, metadata)
        for root in roots:
            aggregate_tree(root)
        return [root for root in roots if root.type == category_type]

    def planned_vs_actual(
        self,
        period: Optional[Period] = None,
        *,
        category_type: CategoryType = CategoryType.expense,
        limit: int = 6,
    ) -> list[PlannedVsActualEntry]:
        roots = self._aggregated_roots(period, category_type)
        roots.sort(key=lambda node: node.planned, reverse=True)
        return [
            PlannedVsActualEntry(
                category_id=node.category_id,
                name=node.name,
                planned=node.planned,
                realized=node.realized,
                color=node.color,
            )
            for node in roots[:limit]
        ]

    def expense_distribution(
        self,
        period: Optional[Period] = None,
        *,
        category_type: CategoryType = CategoryType.expense,
        limit: int = 6,
    ) -> list[DistributionEntry]:
        roots = [
            node
            for node in self._aggregated_roots(period, category_type)
            if node.realized > 0
        ]
        roots.sort(key=lambda node: node.realized, reverse=True)
        shown = roots[:limit]
        total = sum((node.realized for node in shown), ZERO)
        if total == 0:
            return []
        return [
            DistributionEntry(
                category_id=node.category_id,
                name=node.name,
                realized=node.realized,
                percentage=round_money(node.realized / total * 100),
                color=node.color,
            )
            for node in shown
        ]


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@dataclass
class ApplyResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def count(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "ApplyResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped


@dataclass(frozen=True)
class PlannedEntry:
    category_id: int
    planned_amount: Decimal
    note: Optional[str] = None
    replace_note: bool = True
    context: Optional[dict[str, Any]] = field(default=None, compare=False)


@dataclass(frozen=True)
class BulkUpsertResult:
    updated: list[PlannedEntry]
    count: int


def _action(prefix: Optional[str], verb: str) -> str:
    return f"{prefix}_{verb}" if prefix else verb


class ProvisionService:
    def __init__(
        self, session: Session, group_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.group_id = group_id
        self.user_id = user_id

    def _dictionary(self) -> CategoryDictionary:
        return load_category_dictionary(self.session, self.group_id)

    def _log(self, category_id: int, period: Period, action: str, **kwargs: Any) -> None:
        record_provision_audit_log(
            self.session,
            group_id=self.group_id,
            user_id=self.user_id,
            category_id=category_id,
            month=period.month,
            year=period.year,
            action=action,
            **kwargs,
        )

    def apply_entries(
        self,
        period: Period,
        entries: Sequence[PlannedEntry],
        *,
        overwrite: bool = True,
        action_prefix: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        existing: Optional[dict[int, Provision]] = None,
    ) -> ApplyResult:
        """
        Insert or update one provision per entry and audit each write.

        Later entries for the same category replace earlier ones. Existing rows
        are only touched when ``overwrite`` is set. Runs inside the caller's
        transaction; nothing is committed here.
        """
        by_category: dict[int, PlannedEntry] = {}
        for entry in entries:
            by_category[entry.category_id] = entry
        result = ApplyResult()
        if not by_category:
            return result

        if existing is None:
            existing = _provisions_for_period(
                self.session, self.group_id, period, list(by_category)
            )

        for category_id, entry in by_category.items():
            planned = normalize_planned_amount(entry.planned_amount)
            log_context = dict(context or {})
            log_context.update(entry.context or {})
            if entry.replace_note and entry.note:
                log_context["note"] = entry.note

            current = existing.get(category_id)
            if current is None:
                provision = Provision(
                    group_id=self.group_id,
                    category_id=category_id,
                    month=period.month,
                    year=period.year,
                    planned_amount=Decimal(to_money_string(planned)),
                    note=entry.note if entry.replace_note else None,
                )
                self.session.add(provision)
                existing[category_id] = provision
                self._log(
                    category_id,
                    period,
                    _action(action_prefix, "create"),
                    new_amount=planned,
                    context=log_context,
                )
                result.inserted += 1
                continue

            if not overwrite:
                result.skipped += 1
                continue

            previous = to_number(current.planned_amount)
            current.planned_amount = Decimal(to_money_string(planned))
            if entry.replace_note:
                current.note = entry.note
            current.updated_at = datetime.utcnow()
            self._log(
                category_id,
                period,
                _action(action_prefix, "update"),
                previous_amount=previous,
                new_amount=planned,
                context=log_context,
            )
            result.updated += 1

        self.session.flush()
        return result

    def upsert(self, data: ProvisionIn) -> Provision:
        period = Period(month=data.period.month, year=data.period.year)
        if data.category_id not in self._dictionary():
            raise CategoryNotFound("Category not found")
        planned = normalize_planned_amount(data.planned_amount)
        note = normalize_note(data.note)
        context = {"note": note} if note else None

        with atomic(self.session):
            if data.id is not None:
                provision = self.session.get(Provision, data.id)
                if not provision or provision.group_id != self.group_id:
                    raise ProvisionNotFound("Provision not found")
                moved = (provision.category_id, provision.month, provision.year) != (
                    data.category_id,
                    period.month,
                    period.year,
                )
                if moved and _provisions_for_period(
                    self.session, self.group_id, period, [data.category_id]
                ):
                    raise ProvisionConflict(
                        "A provision already exists for this category and period"
                    )
                previous = to_number(provision.planned_amount)
                provision.category_id = data.category_id
                provision.month = period.month
                provision.year = period.year
                provision.planned_amount = Decimal(to_money_string(planned))
                provision.note = note
                provision.updated_at = datetime.utcnow()
                self._log(
                    data.category_id,
                    period,
                    "update",
                    previous_amount=previous,
                    new_amount=planned,
                    context=context,
                )
            else:
                if _provisions_for_period(
                    self.session, self.group_id, period, [data.category_id]
                ):
                    raise ProvisionConflict(
                        "A provision already exists for this category and period"
                    )
                provision = Provision(
                    group_id=self.group_id,
                    category_id=data.category_id,
                    month=period.month,
                    year=period.year,
                    planned_amount=Decimal(to_money_string(planned)),
                    note=note,
                )
                self.session.add(provision)
                self._log(
                    data.category_id,
                    period,
                    "create",
                    new_amount=planned,
                    context=context,
                )
        logger.info(
            f"provisions_upsert: group={self.group_id} category={data.category_id} "
            f"period={period.year}-{period.month:02d}"
        )
        return provision

    def delete(self, provision_id: int) -> None:
        provision = self.session.get(Provision, provision_id)
        if not provision or provision.group_id != self.group_id:
            raise ProvisionNotFound("Provision not found")
        period = Period(month=provision.month, year=provision.year)
        with atomic(self.session):
            self._log(
                provision.category_id,
                period,
                "delete",
                previous_amount=to_number(provision.planned_amount),
            )
            self.session.delete(provision)
        logger.info(f"provisions_delete: group={self.group_id} provision={provision_id}")

    def bulk_upsert(
        self, period: Period, entries: Sequence[BulkUpsertEntryIn]
    ) -> BulkUpsertResult:
        if not entries:
            return BulkUpsertResult(updated=[], count=0)

        dictionary = self._dictionary()
        unknown = sorted({e.category_id for e in entries} - set(dictionary))
        if unknown:
            raise CategoryNotFound(
                f"Category not found: {', '.join(str(i) for i in unknown)}"
            )

        planned_entries = [
            PlannedEntry(
                category_id=entry.category_id,
                planned_amount=normalize_planned_amount(entry.planned_amount),
                note=normalize_note(entry.note),
            )
            for entry in entries
        ]
        with atomic(self.session):
            result = self.apply_entries(period, planned_entries)

        deduped = list({e.category_id: e for e in planned_entries}.values())
        logger.info(
            f"provisions_bulk_upsert: group={self.group_id} "
            f"inserted={result.inserted} updated={result.updated}"
        )
        return BulkUpsertResult(updated=deduped, count=result.count)

    def copy_from_previous(
        self,
        from_period: Period,
        to_period: Period,
        *,
        overwrite: bool = False,
        category_ids: Optional[Sequence[int]] = None,
    ) -> ApplyResult:
        if from_period == to_period:
            return ApplyResult()

        allowed = ensure_category_ids(self._dictionary(), category_ids)
        if not allowed:
            return ApplyResult()

        source_rows = self.session.scalars(
            select(Provision)
            .where(
                Provision.group_id == self.group_id,
                Provision.month == from_period.month,
                Provision.year == from_period.year,
                Provision.category_id.in_(allowed),
            )
            .order_by(Provision.id)
        ).all()
        if not source_rows:
            return ApplyResult()

        entries = [
            PlannedEntry(
                category_id=row.category_id,
                planned_amount=to_number(row.planned_amount),
                note=normalize_note(row.note),
            )
            for row in source_rows
        ]
        with atomic(self.session):
            result = self.apply_entries(
                to_period,
                entries,
                overwrite=overwrite,
                action_prefix="copy",
                context={"from_month": from_period.month, "from_year": from_period.year},
            )
        logger.info(
            f"provisions_copy: group={self.group_id} "
            f"from={from_period.year}-{from_period.month:02d} "
            f"to={to_period.year}-{to_period.month:02d} "
            f"inserted={result.inserted} updated={result.updated} skipped={result.skipped}"
        )
        return result

    def bulk_set_value(
        self,
        period: Period,
        category_ids: Sequence[int],
        *,
        mode: str,
        value: Any,
        note_strategy: str = "keep",
        note: Optional[str] = None,
    ) -> ApplyResult:
        if mode not in ("absolute", "relative"):
            raise ValueError(f"Unsupported mode: {mode}")
        if note_strategy not in ("keep", "replace"):
            raise ValueError(f"Unsupported note strategy: {note_strategy}")
        if not category_ids:
            return ApplyResult()

        ids = list(dict.fromkeys(ensure_category_ids(self._dictionary(), category_ids)))
        if not ids:
            return ApplyResult()

        amount = normalize_planned_amount(value)
        existing = _provisions_for_period(self.session, self.group_id, period, ids)
        replace_note = note_strategy == "replace"
        clean_note = normalize_note(note) if replace_note else None

        entries: list[PlannedEntry] = []
        for category_id in ids:
            if mode == "relative":
                current = existing.get(category_id)
                base = to_number(current.planned_amount) if current else ZERO
                planned = round_money(base * amount / 100)
            else:
                planned = round_money(amount)
            entries.append(
                PlannedEntry(
                    category_id=category_id,
                    planned_amount=planned,
                    note=clean_note,
                    replace_note=replace_note,
                )
            )

        with atomic(self.session):
            result = self.apply_entries(
                period,
                entries,
                action_prefix="bulk_set",
                context={"mode": mode, "value": to_money_string(amount)},
                existing=existing,
            )
        logger.info(
            f"provisions_bulk_set_value: group={self.group_id} mode={mode} "
            f"count={result.count}"
        )
        return result

    def _historical_weights(
        self, period: Period, ids: Sequence[int], dictionary: CategoryDictionary
    ) -> list[Decimal]:
        months = get_settings().history_months
        start, _ = create_month_range(shift_period(period, -months))
        _, end = create_month_range(previous_period(period))
        realized = realized_by_category(self.session, self.group_id, start, end, ids)
        return [
            realized.get(category_id, {}).get(dictionary[category_id].type.value, ZERO)
            for category_id in ids
        ]

    def bulk_distribute(
        self,
        period: Period,
        category_ids: Sequence[int],
        *,
        amount: Any,
        strategy: str = "equal",
    ) -> ApplyResult:
        if strategy not in ("equal", "historical"):
            raise ValueError(f"Unsupported distribution strategy: {strategy}")
        if not category_ids:
            return ApplyResult()
        amount = normalize_planned_amount(amount)

        dictionary = self._dictionary()
        ids = list(dict.fromkeys(ensure_category_ids(dictionary, category_ids)))
        if not ids:
            return ApplyResult()

        if strategy == "historical":
            weights = self._historical_weights(period, ids, dictionary)
        else:
            weights = [Decimal("1")] * len(ids)
        shares = allocate(amount, weights)

        entries = [
            PlannedEntry(category_id=category_id, planned_amount=share, replace_note=False)
            for category_id, share in zip(ids, shares)
        ]
        with atomic(self.session):
            result = self.apply_entries(
                period,
                entries,
                action_prefix="distribute",
                context={"strategy": strategy, "amount": to_money_string(amount)},
            )
        logger.info(
            f"provisions_bulk_distribute: group={self.group_id} strategy={strategy} "
            f"count={result.count}"
        )
        return result

    def import_rows(
        self,
        rows: Sequence[CsvImportRowIn | CsvProvisionRow],
        *,
        overwrite: bool = False,
    ) -> ApplyResult:
        """
        Upsert imported rows, each against its own period.

        Every row is resolved first; a single unresolvable row rejects the
        whole import before anything is written.
        """
        resolver = CategoryResolver(self._dictionary())
        errors: list[str] = []
        by_period: dict[Period, list[PlannedEntry]] = {}
        for position, row in enumerate(rows, start=1):
            label = f"Row {getattr(row, 'line', position)}"
            try:
                category_id = resolver.resolve(row.category_id, row.category_name)
            except ValueError as exc:
                errors.append(f"{label}: {exc}")
                continue
            period = Period(month=row.month, year=row.year)
            by_period.setdefault(period, []).append(
                PlannedEntry(
                    category_id=category_id,
                    planned_amount=normalize_planned_amount(row.planned_amount),
                    note=normalize_note(row.note),
                )
            )
        if errors:
            raise CsvImportError("; ".join(errors))

        total = ApplyResult()
        with atomic(self.session):
            for period, entries in by_period.items():
                total.merge(
                    self.apply_entries(
                        period,
                        entries,
                        overwrite=overwrite,
                        action_prefix="import",
                        context={"source": "csv"},
                    )
                )
        logger.info(
            f"provisions_import: group={self.group_id} rows={len(rows)} "
            f"inserted={total.inserted} updated={total.updated} skipped={total.skipped}"
        )
        return total


class CategoryResolver:
    """Find a category by id, exact name/path, or a unique name one edit away."""

    def __init__(self, dictionary: CategoryDictionary) -> None:
        self.dictionary = dictionary

    def resolve(self, category_id: Optional[int], category_name: Optional[str]) -> int:
        if category_id is not None and category_id in self.dictionary:
            return category_id

        name = (category_name or "").strip()
        if not name:
            if category_id is not None:
                raise CategoryNotFound(f"Category {category_id} not found")
            raise ValueError("Missing category_id and category_name")

        wanted = name.casefold()
        exact = [
            entry
            for entry in self.dictionary.values()
            if entry.name.strip().casefold() == wanted
            or " > ".join(entry.path).casefold() == wanted
        ]
        if len(exact) == 1:
            return exact[0].id
        if len(exact) > 1:
            options = ", ".join(" > ".join(entry.path) for entry in exact)
            raise ValueError(f"Category '{name}' is ambiguous; matches: {options}")

        best_distance: Optional[int] = None
        best: list[CategoryDictionaryEntry] = []
        for entry in self.dictionary.values():
            dist = int(Levenshtein.distance(wanted, entry.name.strip().casefold()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [entry]
            elif dist == best_distance:
                best.append(entry)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({entry.name for entry in best}))
                raise ValueError(f"Category '{name}' is ambiguous; matches: {options}")
            return best[0].id
        raise CategoryNotFound(f"Category '{name}' not found")


class CSVService:
    def __init__(
        self, session: Session, group_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.group_id = group_id
        self.user_id = user_id

    def parse(self, content: str) -> list[CsvProvisionRow]:
        rows, errors = parse_provisions_csv(content)
        if errors:
            raise CsvImportError("; ".join(errors))
        return rows

    def import_csv(self, content: str, *, overwrite: bool = False) -> ApplyResult:
        rows = self.parse(content)
        return ProvisionService(self.session, self.group_id, self.user_id).import_rows(
            rows, overwrite=overwrite
        )

    def export(self, period: Optional[Period] = None) -> str:
        resolved = period or resolve_period()
        grid = GridService(self.session, self.group_id).fetch(resolved)
        provisions = _provisions_for_period(
            self.session, self.group_id, resolved, [row.category_id for row in grid]
        )
        return export_provisions_csv(
            CsvExportRow(
                category_id=row.category_id,
                category_name=row.name,
                month=resolved.month,
                year=resolved.year,
                planned_amount=row.planned,
                note=provisions[row.category_id].note
                if row.category_id in provisions
                else None,
            )
            for row in grid
        )


class TemplateService:
    def __init__(
        self, session: Session, group_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.group_id = group_id
        self.user_id = user_id

    def list_all(self) -> list[ProvisionTemplate]:
        stmt = (
            select(ProvisionTemplate)
            .options(joinedload(ProvisionTemplate.items))
            .where(ProvisionTemplate.group_id == self.group_id)
            .order_by(ProvisionTemplate.name, ProvisionTemplate.id)
        )
        return self.session.scalars(stmt).unique().all()

    def get(self, template_id: Optional[int]) -> ProvisionTemplate:
        template = (
            self.session.get(ProvisionTemplate, template_id)
            if template_id is not None
            else None
        )
        if not template or template.group_id != self.group_id:
            raise TemplateNotFound("Template not found")
        return template

    def upsert(self, data: TemplateIn) -> ProvisionTemplate:
        """
        Save the planned amounts of a period under a name.

        With ``category_ids`` only those categories are captured, otherwise the
        whole active grid. Saving under an existing name replaces its items.
        """
        name = data.name.strip()
        if not name:
            raise ValueError("Template name is required")
        period = Period(month=data.period.month, year=data.period.year)

        selected = set(data.category_ids)
        rows = GridService(self.session, self.group_id).fetch(
            period, include_inactive=bool(selected)
        )
        if selected:
            rows = [row for row in rows if row.category_id in selected]

        existing = self.session.scalar(
            select(ProvisionTemplate).where(
                ProvisionTemplate.group_id == self.group_id,
                func.lower(ProvisionTemplate.name) == name.lower(),
            )
        )
        with atomic(self.session):
            if existing:
                template = existing
                template.name = name
                template.items.clear()
                self.session.flush()
            else:
                template = ProvisionTemplate(
                    group_id=self.group_id, name=name, created_by=self.user_id
                )
                self.session.add(template)
            template.description = normalize_note(data.description)
            template.source_month = period.month
            template.source_year = period.year
            for row in rows:
                template.items.append(
                    ProvisionTemplateItem(
                        category_id=row.category_id, planned_amount=row.planned
                    )
                )
        logger.info(
            f"provisions_template_saved: group={self.group_id} template={template.id} "
            f"items={len(rows)}"
        )
        return template

    def apply(self, data: ApplyTemplateIn) -> ApplyResult:
        template = self.get(data.template_id)
        target = Period(month=data.target.month, year=data.target.year)
        allowed = set(
            ensure_category_ids(
                load_category_dictionary(self.session, self.group_id), data.category_ids
            )
        )
        entries = [
            PlannedEntry(
                category_id=item.category_id,
                planned_amount=to_number(item.planned_amount),
                replace_note=False,
            )
            for item in template.items
            if item.category_id in allowed
        ]
        if not entries:
            return ApplyResult()

        with atomic(self.session):
            result = ProvisionService(
                self.session, self.group_id, self.user_id
            ).apply_entries(
                target,
                entries,
                overwrite=data.overwrite,
                action_prefix="template",
                context={"template_id": template.id, "template_name": template.name},
            )
        logger.info(
            f"provisions_template_applied: group={self.group_id} template={template.id} "
            f"inserted={result.inserted} updated={result.updated}"
        )
        return result

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        with atomic(self.session):
            self.session.delete(template)


def _rule_active(rule: ProvisionRecurringRule, period: Period) -> bool:
    target = period_ordinal(period)
    start = period_ordinal(Period(month=rule.start_month, year=rule.start_year))
    if target < start:
        return False
    if rule.end_month is None or rule.end_year is None:
        return True
    return target <= period_ordinal(Period(month=rule.end_month, year=rule.end_year))


class RecurringProvisionService:
    def __init__(
        self, session: Session, group_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.group_id = group_id
        self.user_id = user_id

    def list_all(self) -> list[ProvisionRecurringRule]:
        stmt = (
            select(ProvisionRecurringRule)
            .where(ProvisionRecurringRule.group_id == self.group_id)
            .order_by(ProvisionRecurringRule.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> ProvisionRecurringRule:
        rule = self.session.get(ProvisionRecurringRule, rule_id)
        if not rule or rule.group_id != self.group_id:
            raise RecurringRuleNotFound("Recurring rule not found")
        return rule

    def upsert(self, data: RecurringRuleIn) -> ProvisionRecurringRule:
        if data.category_id not in load_category_dictionary(self.session, self.group_id):
            raise CategoryNotFound("Category not found")
        with atomic(self.session):
            if data.id is not None:
                rule = self.get(data.id)
            else:
                rule = ProvisionRecurringRule(
                    group_id=self.group_id, created_by=self.user_id
                )
                self.session.add(rule)
            rule.category_id = data.category_id
            rule.planned_amount = Decimal(
                to_money_string(normalize_planned_amount(data.planned_amount))
            )
            rule.start_month = data.start.month
            rule.start_year = data.start.year
            rule.end_month = data.end.month if data.end else None
            rule.end_year = data.end.year if data.end else None
            rule.apply_automatically = data.apply_automatically
            rule.notes = normalize_note(data.notes)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        with atomic(self.session):
            self.session.delete(rule)

    def apply_for_period(
        self, period: Optional[Period] = None, *, automatic_only: bool = False
    ) -> ApplyResult:
        """Create provisions from active rules; existing provisions are left alone."""
        resolved = period or resolve_period()
        dictionary = load_category_dictionary(self.session, self.group_id)
        rules = [
            rule
            for rule in self.list_all()
            if _rule_active(rule, resolved)
            and rule.category_id in dictionary
            and (rule.apply_automatically or not automatic_only)
        ]
        entries = [
            PlannedEntry(
                category_id=rule.category_id,
                planned_amount=to_number(rule.planned_amount),
                note=normalize_note(rule.notes),
                context={"rule_id": rule.id},
            )
            for rule in rules
        ]
        if not entries:
            return ApplyResult()

        with atomic(self.session):
            result = ProvisionService(
                self.session, self.group_id, self.user_id
            ).apply_entries(
                resolved, entries, overwrite=False, action_prefix="recurring"
            )
        logger.info(
            f"provisions_recurring_applied: group={self.group_id} "
            f"period={resolved.year}-{resolved.month:02d} inserted={result.inserted}"
        )
        return result


def apply_recurring_for_all_groups(session: Session, period: Period) -> int:
    group_ids = session.scalars(
        select(ProvisionRecurringRule.group_id)
        .where(ProvisionRecurringRule.apply_automatically.is_(True))
        .distinct()
    ).all()
    inserted = 0
    for group_id in group_ids:
        result = RecurringProvisionService(session, group_id).apply_for_period(
            period, automatic_only=True
        )
        inserted += result.inserted
    return inserted
