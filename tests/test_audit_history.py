from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import Category, CategoryType, Provision, ProvisionAuditLog
from periods import Period
from schemas import PeriodIn, ProvisionIn
from services import (
    HistoryService,
    ProvisionConflict,
    ProvisionNotFound,
    ProvisionService,
    record_provision_audit_log,
)

JANUARY = Period(month=0, year=2025)


def _seed(session: Session) -> None:
    session.add_all(
        [
            Category(id=1, group_id=1, name="Aluguel", type=CategoryType.expense),
            Category(id=2, group_id=1, name="Mercado", type=CategoryType.expense),
        ]
    )
    session.commit()


def _provision_in(category_id: int, amount: str, id=None, note=None) -> ProvisionIn:
    return ProvisionIn(
        id=id,
        category_id=category_id,
        period=PeriodIn(month=0, year=2025),
        planned_amount=Decimal(amount),
        note=note,
    )


def test_record_serializes_amounts_and_defaults_context() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        entry = record_provision_audit_log(
            session,
            group_id=1,
            user_id=None,
            category_id=1,
            month=0,
            year=2025,
            action="create",
            new_amount=10.005,
        )
        session.commit()

        assert entry.new_amount == Decimal("10.01")
        assert entry.previous_amount is None
        assert entry.context == {}


def test_single_upsert_update_and_delete_are_audited() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1, user_id=5)

        created = service.upsert(_provision_in(1, "100", note="rent"))
        with pytest.raises(ProvisionConflict):
            service.upsert(_provision_in(1, "200"))

        service.upsert(_provision_in(1, "120", id=created.id))
        assert session.get(Provision, created.id).planned_amount == Decimal("120.00")

        service.delete(created.id)
        assert session.get(Provision, created.id) is None
        with pytest.raises(ProvisionNotFound):
            service.delete(created.id)

        logs = session.scalars(select(ProvisionAuditLog).order_by(ProvisionAuditLog.id)).all()
        assert [log.action for log in logs] == ["create", "update", "delete"]
        assert logs[0].context == {"note": "rent"}
        assert logs[2].previous_amount == Decimal("120.00")
        assert logs[2].new_amount is None


def test_upsert_by_id_from_other_group_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        created = ProvisionService(session, 1).upsert(_provision_in(1, "100"))
        session.add(Category(id=9, group_id=2, name="Aluguel", type=CategoryType.expense))
        session.commit()

        with pytest.raises(ProvisionNotFound):
            ProvisionService(session, 2).upsert(_provision_in(9, "1", id=created.id))


def test_history_is_newest_first_and_scoped_to_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        service = ProvisionService(session, 1)
        service.upsert(_provision_in(1, "100"))
        service.upsert(_provision_in(2, "50"))
        service.bulk_set_value(JANUARY, [1, 2], mode="absolute", value=70)
        service.bulk_set_value(Period(month=1, year=2025), [1], mode="absolute", value=1)
        record_provision_audit_log(
            session,
            group_id=2,
            user_id=None,
            category_id=None,
            month=0,
            year=2025,
            action="create",
        )
        session.commit()

        history = HistoryService(session, 1).fetch(JANUARY)
        assert [entry.action for entry in history] == [
            "bulk_set_update",
            "bulk_set_update",
            "create",
            "create",
        ]
        assert history[0].category.name == "Mercado"

        assert len(HistoryService(session, 1).fetch(JANUARY, limit=2)) == 2
