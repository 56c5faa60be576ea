from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import BudgetYear, Transaction
from schemas import (
    BudgetAllocationIn,
    CategoryAllocationIn,
    ManageBudgetIn,
    PurchaseIn,
    PurchaseLineIn,
    RefundIn,
    RefundLineIn,
)
from services import (
    BudgetQueryService,
    KeyedLock,
    LedgerConflictError,
    LedgerReferenceError,
    LedgerStorageError,
    LedgerStore,
    LedgerValidationError,
    rebuild_budget_totals,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_store(session, **kwargs) -> LedgerStore:
    kwargs.setdefault("lock_past_years", False)
    return LedgerStore(session, locks=KeyedLock(), **kwargs)


def purchase_in(on=date(2025, 4, 1), amount_cents=1_000, category_id="meals"):
    return PurchaseIn(
        date=on,
        lines=[
            PurchaseLineIn(
                category_id=category_id,
                care_item_slug="lunch",
                amount_cents=amount_cents,
            )
        ],
    )


def test_purchase_persists_lines_and_defaults_label() -> None:
    session = make_session()
    store = make_store(session)

    txn = store.record_transaction("C", 2025, purchase_in(), "user-1")

    stored = session.get(Transaction, txn.id)
    assert stored.created_by_user_id == "user-1"
    assert [(ln.category_id, ln.care_item_slug, ln.label) for ln in stored.lines] == [
        ("meals", "lunch", "lunch")
    ]


@pytest.mark.parametrize(
    "client_id, year, user_id, message",
    [
        ("", 2025, "user-1", "clientId"),
        ("C", 2025, "", "createdByUserId"),
        ("C", 1800, "user-1", "year must be between"),
        ("C", 2024, "user-1", "budget year"),
    ],
)
def test_record_transaction_rejects_bad_identity(
    client_id, year, user_id, message
) -> None:
    session = make_session()
    store = make_store(session)

    with pytest.raises(LedgerValidationError, match=message):
        store.record_transaction(client_id, year, purchase_in(), user_id)
    assert session.scalars(select(Transaction)).all() == []


def test_record_transaction_rejects_empty_and_non_positive_lines() -> None:
    session = make_session()
    store = make_store(session)

    with pytest.raises(LedgerValidationError, match="At least one line"):
        store.record_transaction(
            "C", 2025, PurchaseIn(date=date(2025, 1, 2), lines=[]), "user-1"
        )
    with pytest.raises(LedgerValidationError, match="positive"):
        store.record_transaction("C", 2025, purchase_in(amount_cents=0), "user-1")
    with pytest.raises(LedgerValidationError, match="categoryId"):
        store.record_transaction("C", 2025, purchase_in(category_id=" "), "user-1")


def test_purchase_line_requires_amount_in_payload() -> None:
    with pytest.raises(ValidationError):
        PurchaseLineIn(category_id="meals", care_item_slug="lunch")


def test_purchase_line_refuses_refund_references() -> None:
    with pytest.raises(ValidationError):
        PurchaseLineIn.model_validate(
            {
                "categoryId": "meals",
                "careItemSlug": "lunch",
                "amountCents": 500,
                "refundOfTransId": 1,
                "refundOfLineId": 1,
            }
        )
    with pytest.raises(ValidationError):
        RefundLineIn.model_validate(
            {
                "refundOfTransId": 1,
                "refundOfLineId": 1,
                "amountCents": 500,
                "categoryId": "meals",
            }
        )


def test_void_is_idempotent() -> None:
    session = make_session()
    store = make_store(session)
    txn = store.record_transaction("C", 2025, purchase_in(), "user-1")

    first = store.void_transaction(txn.id, "C")
    stamp = first.voided_at
    second = store.void_transaction(txn.id, "C")

    assert stamp is not None
    assert second.voided_at == stamp


def test_void_unknown_or_foreign_transaction_is_reference_error() -> None:
    session = make_session()
    store = make_store(session)
    txn = store.record_transaction("C", 2025, purchase_in(), "user-1")

    with pytest.raises(LedgerReferenceError):
        store.void_transaction(999)
    with pytest.raises(LedgerReferenceError):
        store.void_transaction(txn.id, "someone-else")


def test_available_years_are_descending_and_unique() -> None:
    session = make_session()
    store = make_store(session)
    service = BudgetQueryService(session, store=store)
    store.set_annual("C", 2023, 10_000)
    store.set_annual("C", 2025, 10_000)
    store.record_transaction("C", 2025, purchase_in(), "user-1")
    store.record_transaction("C", 2024, purchase_in(on=date(2024, 8, 8)), "user-1")
    store.record_transaction("D", 2026, purchase_in(on=date(2026, 1, 1)), "user-1")

    assert service.get_available_years("C") == [2025, 2024, 2023]
    assert service.get_available_years("nobody") == []


def test_list_transactions_newest_first_without_voided() -> None:
    session = make_session()
    store = make_store(session)
    older = store.record_transaction(
        "C", 2025, purchase_in(on=date(2025, 1, 5)), "user-1"
    )
    newer = store.record_transaction(
        "C", 2025, purchase_in(on=date(2025, 3, 5)), "user-2"
    )
    same_day = store.record_transaction(
        "C", 2025, purchase_in(on=date(2025, 3, 5)), "user-2"
    )
    voided = store.record_transaction(
        "C", 2025, purchase_in(on=date(2025, 6, 1)), "user-1"
    )
    store.void_transaction(voided.id, "C")

    listed = store.list_transactions("C", 2025)
    assert [t.id for t in listed] == [same_day.id, newer.id, older.id]


def test_allocation_upsert_is_keyed_by_client_and_year() -> None:
    session = make_session()
    store = make_store(session)
    payload = BudgetAllocationIn(
        annual_allocated_cents=50_000,
        categories=[CategoryAllocationIn(category_id="meals", allocated_cents=10_000)],
    )
    store.upsert_budget_allocation("C", 2025, payload)
    store.upsert_budget_allocation(
        "C",
        2025,
        BudgetAllocationIn(
            categories=[
                CategoryAllocationIn(
                    category_id="meals", category_name="Meals", allocated_cents=12_000
                ),
                CategoryAllocationIn(category_id="respite", allocated_cents=8_000),
            ]
        ),
    )

    budgets = session.scalars(select(BudgetYear)).all()
    assert len(budgets) == 1
    budget = budgets[0]
    assert budget.annual_allocated_cents == 50_000
    rows = [
        (c.category_id, c.category_name, c.allocated_cents) for c in budget.categories
    ]
    assert rows == [
        ("meals", "Meals", 12_000),
        ("respite", "Category", 8_000),
    ]
    assert budget.totals_allocated_cents == 20_000


def test_allocation_rejects_negative_amounts() -> None:
    session = make_session()
    store = make_store(session)

    with pytest.raises(LedgerValidationError):
        store.set_annual("C", 2025, -1)
    with pytest.raises(LedgerValidationError):
        store.upsert_budget_allocation(
            "C",
            2025,
            BudgetAllocationIn(
                categories=[
                    CategoryAllocationIn(category_id="meals", allocated_cents=-5)
                ]
            ),
        )


def test_shrinking_category_scales_care_items_down() -> None:
    session = make_session()
    store = make_store(session)
    store.set_category("C", 2025, "meals", 10_000, "Meals")
    store.set_item("C", 2025, "meals", "lunch", 6_000, "Lunch")
    store.set_item("C", 2025, "meals", "dinner", 3_000, "Dinner")

    store.set_category("C", 2025, "meals", 4_500)

    budget = store.get_budget_year("C", 2025)
    [category] = budget.categories
    assert category.category_name == "Meals"
    assert [(i.care_item_slug, i.allocated_cents) for i in category.items] == [
        ("lunch", 3_000),
        ("dinner", 1_500),
    ]


def test_care_items_cannot_exceed_category() -> None:
    session = make_session()
    store = make_store(session)
    store.set_category("C", 2025, "meals", 5_000)
    store.set_item("C", 2025, "meals", "lunch", 4_000)

    with pytest.raises(LedgerValidationError, match="exceed"):
        store.set_item("C", 2025, "meals", "dinner", 1_500)
    with pytest.raises(LedgerReferenceError):
        store.set_item("C", 2025, "transport", "taxi", 100)

    store.set_item("C", 2025, "meals", "lunch", 5_000)
    [category] = store.get_budget_year("C", 2025).categories
    assert [i.allocated_cents for i in category.items] == [5_000]


def test_release_category_and_item() -> None:
    session = make_session()
    service = BudgetQueryService(session, store=make_store(session))
    service.manage_budget(
        "C", ManageBudgetIn(action="setAnnual", year=2025, amount_cents=20_000)
    )
    service.manage_budget(
        "C",
        ManageBudgetIn(
            action="setCategory",
            year=2025,
            category_id="meals",
            category_name="Meals",
            amount_cents=8_000,
        ),
    )
    service.manage_budget(
        "C",
        ManageBudgetIn(
            action="setItem",
            year=2025,
            category_id="meals",
            care_item_slug="Lunch",
            amount_cents=2_000,
        ),
    )

    service.manage_budget(
        "C",
        ManageBudgetIn(
            action="releaseItem",
            year=2025,
            category_id="meals",
            care_item_slug="lunch",
        ),
    )
    [category] = service.store.get_budget_year("C", 2025).categories
    [item] = category.items
    assert item.allocated_cents == 0
    assert item.released_at is not None

    service.manage_budget(
        "C", ManageBudgetIn(action="releaseCategory", year=2025, category_id="meals")
    )
    assert category.allocated_cents == 0
    assert category.released_at is not None
    assert service.get_summary("C", 2025).surplus == 200

    with pytest.raises(LedgerReferenceError):
        service.manage_budget(
            "C",
            ManageBudgetIn(action="releaseItem", year=2025, category_id="meals"),
        )


def test_past_years_are_read_only_when_locked() -> None:
    session = make_session()
    store = make_store(session, lock_past_years=True, today=lambda: date(2026, 2, 1))

    with pytest.raises(LedgerConflictError, match="read-only"):
        store.set_annual("C", 2025, 1_000)
    with pytest.raises(LedgerConflictError):
        store.record_transaction("C", 2025, purchase_in(), "user-1")

    txn = store.record_transaction(
        "C", 2026, purchase_in(on=date(2026, 1, 15)), "user-1"
    )
    assert txn.id is not None


def test_rebuild_budget_totals_repairs_drift() -> None:
    session = make_session()
    store = make_store(session)
    store.set_annual("C", 2025, 10_000)
    store.record_transaction("C", 2025, purchase_in(amount_cents=2_500), "user-1")
    budget = store.get_budget_year("C", 2025)
    budget.totals_spent_cents = 99
    session.commit()

    assert rebuild_budget_totals(session) == 1
    session.refresh(budget)
    assert budget.totals_spent_cents == 2_500


def unreachable_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'ledger.db'}")
    return sessionmaker(bind=engine)()


def test_unreachable_storage_on_read_is_storage_error(tmp_path) -> None:
    session = unreachable_session(tmp_path)
    service = BudgetQueryService(session, store=make_store(session))

    with pytest.raises(LedgerStorageError):
        service.get_summary("C", 2025)
    with pytest.raises(LedgerStorageError):
        service.get_available_years("C")


def test_unreachable_storage_on_write_is_storage_error(tmp_path) -> None:
    session = unreachable_session(tmp_path)
    store = make_store(session)
    payload = RefundIn(
        date=date(2025, 4, 2),
        lines=[
            RefundLineIn(refund_of_trans_id=1, refund_of_line_id=1, amount_cents=100)
        ],
    )

    with pytest.raises(LedgerStorageError):
        store.record_transaction("C", 2025, payload, "user-1")
    with pytest.raises(LedgerStorageError):
        store.upsert_budget_allocation(
            "C", 2025, BudgetAllocationIn(annual_allocated_cents=1_000)
        )
