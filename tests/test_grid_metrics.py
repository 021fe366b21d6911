from datetime import datetime
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Category, CategoryType, Provision, Transaction, TransactionType
from periods import Period
from services import GridService, MetricsService

JANUARY = Period(month=0, year=2025)


def _seed(session: Session) -> None:
    session.add_all(
        [
            Category(id=1, group_id=1, name="Casa", type=CategoryType.expense),
            Category(id=2, group_id=1, parent_id=1, name="Luz", type=CategoryType.expense),
            Category(id=3, group_id=1, parent_id=1, name="Água", type=CategoryType.expense),
            Category(id=4, group_id=1, name="Salário", type=CategoryType.income),
            Category(
                id=5,
                group_id=1,
                name="Antigo",
                type=CategoryType.expense,
                is_active=False,
            ),
        ]
    )
    session.add_all(
        [
            Provision(group_id=1, category_id=2, month=0, year=2025, planned_amount=Decimal("100")),
            Provision(group_id=1, category_id=3, month=0, year=2025, planned_amount=Decimal("50")),
            Provision(group_id=1, category_id=4, month=0, year=2025, planned_amount=Decimal("5000")),
        ]
    )

    def txn(category_id, type, amount, when, paid=True):
        session.add(
            Transaction(
                group_id=1,
                category_id=category_id,
                type=type,
                amount=Decimal(amount),
                date=when,
                is_paid=paid,
            )
        )

    txn(2, TransactionType.expense, "120", datetime(2025, 1, 10))
    txn(3, TransactionType.expense, "30", datetime(2025, 1, 31, 23, 30))
    txn(3, TransactionType.expense, "40", datetime(2025, 1, 12), paid=False)
    txn(2, TransactionType.expense, "10", datetime(2025, 2, 1))
    txn(2, TransactionType.transfer, "999", datetime(2025, 1, 5))
    txn(4, TransactionType.income, "5000", datetime(2025, 1, 5))
    session.commit()


def test_grid_joins_planned_and_paid_realized() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        rows = GridService(session, 1).fetch(JANUARY)

        assert [row.name for row in rows] == ["Casa", "Água", "Luz", "Salário"]
        by_name = {row.name: row for row in rows}
        assert by_name["Luz"].planned == Decimal("100.00")
        assert by_name["Luz"].realized == Decimal("120.00")
        assert by_name["Água"].realized == Decimal("30.00")
        assert by_name["Casa"].planned == Decimal("0.00")
        assert by_name["Salário"].realized == Decimal("5000.00")
        assert by_name["Luz"].parent_id == 1


def test_grid_filters_by_type_and_activity() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = GridService(session, 1)

        assert [row.name for row in service.fetch(JANUARY, category_type="income")] == [
            "Salário"
        ]
        with_inactive = service.fetch(JANUARY, include_inactive=True)
        assert "Antigo" in [row.name for row in with_inactive]
        assert "Antigo" not in [row.name for row in service.fetch(JANUARY)]
        assert GridService(session, 2).fetch(JANUARY) == []


def test_metrics_totals_and_over_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        metrics = MetricsService(session, 1).fetch(JANUARY)

        assert metrics.planned_total == Decimal("5150.00")
        assert metrics.realized_total == Decimal("6149.00")
        assert metrics.remaining_total == Decimal("-999.00")
        assert metrics.coverage == Decimal("119.40")
        assert metrics.over_budget_total == Decimal("6149.00")


def test_metrics_count_transfers_and_only_provisioned_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        session.add_all(
            [
                Category(id=1, group_id=1, name="Mercado", type=CategoryType.expense),
                Category(id=2, group_id=1, name="Poupança", type=CategoryType.expense),
                Provision(
                    group_id=1, category_id=1, month=0, year=2025, planned_amount=Decimal("100")
                ),
                Transaction(
                    group_id=1,
                    category_id=1,
                    type=TransactionType.expense,
                    amount=Decimal("60"),
                    date=datetime(2025, 1, 8),
                    is_paid=True,
                ),
                Transaction(
                    group_id=1,
                    category_id=2,
                    type=TransactionType.transfer,
                    amount=Decimal("40"),
                    date=datetime(2025, 1, 9),
                    is_paid=True,
                ),
            ]
        )
        session.commit()
        metrics = MetricsService(session, 1).fetch(JANUARY)

        assert metrics.realized_total == Decimal("100.00")
        assert metrics.over_budget_total == Decimal("60.00")
        assert metrics.remaining_total == Decimal("0.00")
        assert metrics.coverage == Decimal("100.00")


def test_metrics_for_empty_period_are_zero() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        metrics = MetricsService(session, 1).fetch(Period(month=5, year=2025))

        assert metrics.planned_total == 0
        assert metrics.realized_total == 0
        assert metrics.coverage == 0
        assert metrics.over_budget_total == 0
