from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from schemas import (
    BudgetAllocationIn,
    CategoryAllocationIn,
    PurchaseIn,
    PurchaseLineIn,
    RefundIn,
    RefundLineIn,
)
from services import (
    Aggregator,
    BudgetQueryService,
    BudgetSummary,
    CategoryRow,
    KeyedLock,
    LedgerStore,
    cents_to_units,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_service(session) -> BudgetQueryService:
    store = LedgerStore(session, locks=KeyedLock(), lock_past_years=False)
    return BudgetQueryService(session, store=store)


def allocate(service, annual_cents, categories, *, year=2025, **extra):
    service.upsert_budget_allocation(
        "C",
        year,
        BudgetAllocationIn(
            annual_allocated_cents=annual_cents,
            categories=[
                CategoryAllocationIn(
                    category_id=category_id,
                    category_name=name,
                    allocated_cents=cents,
                )
                for category_id, name, cents in categories
            ],
            **extra,
        ),
    )


def purchase(service, *lines, on=date(2025, 2, 14)):
    return service.record_purchase(
        "C",
        on.year,
        PurchaseIn(
            date=on,
            lines=[
                PurchaseLineIn(
                    category_id=category_id,
                    care_item_slug=slug,
                    label=label,
                    amount_cents=cents,
                )
                for category_id, slug, label, cents in lines
            ],
        ),
        "user-1",
    )


def test_missing_budget_year_reads_as_zero() -> None:
    session = make_session()
    service = make_service(session)

    assert service.get_summary("C", 2025) == BudgetSummary.zero()
    assert service.get_category_rows("C", 2025) == []
    assert service.get_refundable_lines("C", 2025) == []


def test_overspent_category_is_reported_not_rejected() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 100_000, [("hygiene", "Hygiene", 60_000)])
    purchase(service, ("hygiene", "soap", "Soap", 63_600))

    assert service.get_category_rows("C", 2025) == [
        CategoryRow(
            category_id="hygiene",
            item="Hygiene",
            category="Hygiene",
            allocated=600,
            spent=636,
        )
    ]
    summary = service.get_summary("C", 2025)
    assert summary.annual_allocated == 1_000
    assert summary.spent == 636
    assert summary.remaining == 364
    assert summary.surplus == 400


def test_rows_follow_allocation_order_and_include_zero_spend() -> None:
    session = make_session()
    service = make_service(session)
    allocate(
        service,
        50_000,
        [
            ("transport", "Transport", 20_000),
            ("meals", "Meals", 10_000),
            ("hygiene", "Hygiene", 5_000),
        ],
    )
    purchase(service, ("meals", "lunch", "Lunch", 1_250))

    rows = service.get_category_rows("C", 2025)
    assert [row.category_id for row in rows] == ["transport", "meals", "hygiene"]
    assert [row.spent for row in rows] == [0, 13, 0]


def test_spend_without_allocation_surfaces_as_unknown() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 10_000, [("meals", "Meals", 5_000)])
    purchase(
        service,
        ("meals", "lunch", "Lunch", 2_000),
        ("respite", "overnight", "Overnight", 9_000),
    )

    rows = service.get_category_rows("C", 2025)
    assert rows[-1] == CategoryRow(
        category_id="respite",
        item="Unknown",
        category="Unknown",
        allocated=0,
        spent=90,
    )
    assert service.get_summary("C", 2025).spent == 110


def test_remaining_is_floored_at_zero() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 10_000, [])
    purchase(service, ("meals", "lunch", "Lunch", 25_000))

    summary = service.get_summary("C", 2025)
    assert summary.spent == 250
    assert summary.remaining == 0
    assert summary.surplus == 100


def test_net_spend_ignores_other_years_and_voided_rows() -> None:
    session = make_session()
    service = make_service(session)
    kept = purchase(service, ("meals", "lunch", "Lunch", 1_000))
    dropped = purchase(service, ("meals", "dinner", "Dinner", 4_000))
    purchase(service, ("meals", "lunch", "Lunch", 7_000), on=date(2024, 6, 1))
    service.void_transaction(dropped.id, "C")

    aggregator = Aggregator(session)
    assert aggregator.net_spend_by_category("C", 2025) == {"meals": 1_000}
    assert aggregator.net_spend_by_category("C", 2024) == {"meals": 7_000}
    assert kept.voided_at is None


def test_refunds_reduce_net_spend_for_their_category() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 40_000, [("equipment", "Equipment", 30_000)])
    bought = purchase(service, ("equipment", "walker", "Walker", 25_000))
    service.record_refund(
        "C",
        2025,
        RefundIn(
            date=date(2025, 2, 20),
            lines=[
                RefundLineIn(
                    refund_of_trans_id=bought.id,
                    refund_of_line_id=bought.lines[0].id,
                    amount_cents=5_000,
                )
            ],
        ),
        "user-1",
    )

    [row] = service.get_category_rows("C", 2025)
    assert row.spent == 200
    assert service.get_summary("C", 2025).spent == 200


def test_surplus_override_and_opening_carryover() -> None:
    session = make_session()
    service = make_service(session)
    allocate(
        service,
        80_000,
        [("meals", "Meals", 20_000)],
        surplus_override_cents=12_345,
        opening_carryover_cents=4_050,
        rolled_from_year=2024,
    )

    summary = service.get_summary("C", 2025)
    assert summary.surplus == 123
    assert summary.opening_carryover == 40.5
    budget = service.store.get_budget_year("C", 2025)
    assert budget.rolled_from_year == 2024
    assert budget.totals_allocated_cents == 20_000


def test_category_detail_groups_by_care_item() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 50_000, [("meals", "Meals", 30_000)])
    service.store.set_item("C", 2025, "meals", "lunch", 10_000, "Lunch")
    service.store.set_item("C", 2025, "meals", "breakfast", 5_000, "Breakfast")
    purchase(
        service,
        ("meals", "lunch", "Lunch", 2_000),
        ("meals", "lunch", "Lunch", 1_000),
        ("meals", "snacks", "Snacks", 450),
    )

    detail = service.get_category_detail("C", 2025, "meals")
    assert detail.category_name == "Meals"
    assert detail.allocated == 300
    assert [(i.label, i.allocated, i.spent) for i in detail.items] == [
        ("Breakfast", 50, 0),
        ("Lunch", 100, 30),
        ("Snacks", 0, 5),
    ]
    assert detail.spent == 35


def test_totals_cache_tracks_ledger_writes() -> None:
    session = make_session()
    service = make_service(session)
    allocate(service, 10_000, [("meals", "Meals", 4_000)])
    bought = purchase(service, ("meals", "lunch", "Lunch", 3_000))
    budget = service.store.get_budget_year("C", 2025)
    assert budget.totals_spent_cents == 3_000

    service.void_transaction(bought.id, "C")
    session.refresh(budget)
    assert budget.totals_spent_cents == 0


def test_cents_round_half_up_to_whole_units() -> None:
    assert cents_to_units(0) == 0
    assert cents_to_units(149) == 1
    assert cents_to_units(150) == 2
    assert cents_to_units(63_600) == 636
    assert cents_to_units(-150) == -2
