from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import services
from database import Base
from models import (
    Category,
    CategoryType,
    Provision,
    ProvisionAuditLog,
    Transaction,
    TransactionType,
)
from money import MAX_AMOUNT, AmountOutOfRange
from periods import Period
from schemas import BulkUpsertEntryIn
from services import CategoryNotFound, ProvisionService

JANUARY = Period(month=0, year=2025)


def _seed(session: Session) -> None:
    session.add_all(
        [
            Category(id=1, group_id=1, name="Aluguel", type=CategoryType.expense),
            Category(id=2, group_id=1, name="Mercado", type=CategoryType.expense),
            Category(id=3, group_id=1, name="Lazer", type=CategoryType.expense),
            Category(id=10, group_id=2, name="Outro grupo", type=CategoryType.expense),
        ]
    )
    session.commit()


def _planned(session: Session, category_id: int, period: Period = JANUARY) -> Provision:
    return session.scalar(
        select(Provision).where(
            Provision.category_id == category_id,
            Provision.month == period.month,
            Provision.year == period.year,
        )
    )


def _actions(session: Session) -> list[str]:
    return list(
        session.scalars(select(ProvisionAuditLog.action).order_by(ProvisionAuditLog.id))
    )


def test_bulk_upsert_inserts_then_updates_with_audit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1, user_id=7)

        result = service.bulk_upsert(
            JANUARY,
            [
                BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("1500")),
                BulkUpsertEntryIn(category_id=2, planned_amount=Decimal("600"), note=" weekly "),
            ],
        )
        assert result.count == 2
        assert _planned(session, 2).note == "weekly"

        result = service.bulk_upsert(
            JANUARY, [BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("1600"))]
        )
        assert result.count == 1
        assert _planned(session, 1).planned_amount == Decimal("1600.00")

        assert _actions(session) == ["create", "create", "update"]
        last = session.scalars(
            select(ProvisionAuditLog).order_by(ProvisionAuditLog.id.desc())
        ).first()
        assert last.previous_amount == Decimal("1500.00")
        assert last.new_amount == Decimal("1600.00")
        assert last.user_id == 7


def test_bulk_upsert_rejects_foreign_category_without_writing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        with pytest.raises(CategoryNotFound):
            ProvisionService(session, 1).bulk_upsert(
                JANUARY,
                [
                    BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("10")),
                    BulkUpsertEntryIn(category_id=10, planned_amount=Decimal("10")),
                ],
            )
        assert session.scalar(select(func.count(Provision.id))) == 0


def test_bulk_upsert_last_entry_wins() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        result = ProvisionService(session, 1).bulk_upsert(
            JANUARY,
            [
                BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("100")),
                BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("200")),
            ],
        )
        assert result.count == 1
        assert [entry.planned_amount for entry in result.updated] == [Decimal("200")]
        assert _planned(session, 1).planned_amount == Decimal("200.00")
        assert _actions(session) == ["create"]


def test_failed_batch_leaves_no_partial_writes(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        original = services.record_provision_audit_log
        calls = []

        def flaky(*args, **kwargs):
            calls.append(kwargs["category_id"])
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original(*args, **kwargs)

        monkeypatch.setattr(services, "record_provision_audit_log", flaky)

        with pytest.raises(RuntimeError):
            ProvisionService(session, 1).bulk_upsert(
                JANUARY,
                [
                    BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("10")),
                    BulkUpsertEntryIn(category_id=2, planned_amount=Decimal("20")),
                ],
            )
        assert session.scalar(select(func.count(Provision.id))) == 0
        assert session.scalar(select(func.count(ProvisionAuditLog.id))) == 0


def test_bulk_set_value_absolute_replaces_note() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1)
        service.bulk_upsert(
            JANUARY,
            [BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("100"), note="old")],
        )

        result = service.bulk_set_value(
            JANUARY,
            [1, 2],
            mode="absolute",
            value=Decimal("250"),
            note_strategy="replace",
            note="new",
        )

        assert (result.inserted, result.updated) == (1, 1)
        assert _planned(session, 1).planned_amount == Decimal("250.00")
        assert _planned(session, 1).note == "new"
        assert _planned(session, 2).note == "new"
        assert _actions(session) == ["create", "bulk_set_update", "bulk_set_create"]


def test_bulk_set_value_relative_is_percentage_of_current() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1)
        service.bulk_upsert(
            JANUARY,
            [BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("333.33"), note="keep me")],
        )

        result = service.bulk_set_value(JANUARY, [1, 2], mode="relative", value=50)

        assert result.count == 2
        assert _planned(session, 1).planned_amount == Decimal("166.67")
        assert _planned(session, 1).note == "keep me"
        assert _planned(session, 2).planned_amount == Decimal("0.00")


def test_bulk_set_value_rejects_unknown_mode() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        with pytest.raises(ValueError, match="Unsupported mode"):
            ProvisionService(session, 1).bulk_set_value(
                JANUARY, [1], mode="double", value=1
            )


def test_bulk_distribute_equal_shares_add_up() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        result = ProvisionService(session, 1).bulk_distribute(
            JANUARY, [1, 2, 3, 2], amount=Decimal("100")
        )

        assert result.count == 3
        amounts = [_planned(session, i).planned_amount for i in (1, 2, 3)]
        assert amounts == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
        assert sum(amounts) == Decimal("100.00")
        assert _actions(session) == ["distribute_create"] * 3
        log = session.scalars(select(ProvisionAuditLog)).first()
        assert log.context["strategy"] == "equal"


def test_bulk_distribute_historical_weights_by_previous_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        for category_id, amount, when in (
            (1, "300", datetime(2024, 12, 5)),
            (2, "100", datetime(2024, 10, 1)),
            (3, "500", datetime(2025, 1, 3)),
            (3, "700", datetime(2024, 9, 30)),
        ):
            session.add(
                Transaction(
                    group_id=1,
                    category_id=category_id,
                    type=TransactionType.expense,
                    amount=Decimal(amount),
                    date=when,
                    is_paid=True,
                )
            )
        session.commit()

        ProvisionService(session, 1).bulk_distribute(
            JANUARY, [1, 2, 3], amount=Decimal("1000"), strategy="historical"
        )

        assert [_planned(session, i).planned_amount for i in (1, 2, 3)] == [
            Decimal("750.00"),
            Decimal("250.00"),
            Decimal("0.00"),
        ]


def test_bulk_distribute_historical_without_history_falls_back_to_equal() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        ProvisionService(session, 1).bulk_distribute(
            JANUARY, [1, 2], amount=Decimal("0.05"), strategy="historical"
        )
        assert [_planned(session, i).planned_amount for i in (1, 2)] == [
            Decimal("0.03"),
            Decimal("0.02"),
        ]


def test_amounts_beyond_column_precision_are_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1)

        with pytest.raises(ValidationError):
            BulkUpsertEntryIn(category_id=1, planned_amount=Decimal("1e30"))

        oversized = BulkUpsertEntryIn.model_construct(
            category_id=1, planned_amount=Decimal("1e30"), note=None
        )
        with pytest.raises(AmountOutOfRange):
            service.bulk_upsert(JANUARY, [oversized])
        with pytest.raises(AmountOutOfRange):
            service.bulk_distribute(JANUARY, [1, 2], amount=Decimal("1e30"))

        service.bulk_set_value(JANUARY, [1], mode="absolute", value=MAX_AMOUNT)
        with pytest.raises(AmountOutOfRange):
            service.bulk_set_value(JANUARY, [1], mode="relative", value=Decimal("200"))
        assert _planned(session, 1).planned_amount == MAX_AMOUNT
        assert session.scalar(select(func.count(Provision.id))) == 1
