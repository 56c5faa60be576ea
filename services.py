from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Hashable, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterator, Optional, Union

from sqlalchemy import case, func, select, union, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from models import (
    BudgetCareItem,
    BudgetCategory,
    BudgetYear,
    Transaction,
    TransactionLine,
    TransactionType,
)
from notifier import ChangeNotifier
from schemas import BudgetAllocationIn, ManageBudgetIn, PurchaseIn, RefundIn

logger = logging.getLogger(__name__)

MIN_YEAR = 1970
MAX_YEAR = 3000
UNKNOWN_CATEGORY = "Unknown"

LineKey = tuple[int, int]


class LedgerError(Exception):
    pass


class LedgerValidationError(LedgerError, ValueError):
    pass


class LedgerReferenceError(LedgerError, LookupError):
    pass


class OverRefundError(LedgerError):
    def __init__(
        self,
        purchase_transaction_id: int,
        line_id: int,
        requested_cents: int,
        remaining_cents: int,
    ) -> None:
        self.purchase_transaction_id = purchase_transaction_id
        self.line_id = line_id
        self.requested_cents = requested_cents
        self.remaining_cents = remaining_cents
        super().__init__(
            f"Refund of {requested_cents} exceeds remaining refundable "
            f"{remaining_cents} on purchase {purchase_transaction_id} line {line_id}"
        )


class LedgerConflictError(LedgerError):
    pass


class LedgerStorageError(LedgerError):
    pass


def cents_to_units(cents: int) -> int:
    """Whole currency units, half away from zero like the report screens."""
    return int((Decimal(cents) / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return cents / 100


class KeyedLock:
    """In-process mutexes keyed by purchase line, dropped once nobody holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, list] = {}

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[key] = entry
            entry[1] += 1
            return entry[0]

    def _release(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, keys: Iterable[Hashable]) -> Iterator[None]:
        acquired: list[Hashable] = []
        try:
            # sorted acquisition keeps multi-line refunds deadlock free
            for key in sorted(set(keys)):
                self._checkout(key).acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


refund_locks = KeyedLock()


@contextmanager
def translate_storage_errors(session: Session) -> Iterator[None]:
    """Surface driver failures as ledger errors; the session is rolled back."""
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        raise LedgerConflictError("Concurrent write rejected") from exc
    except (OperationalError, DBAPIError) as exc:
        session.rollback()
        logger.error(f"ledger_storage_error: {exc.__class__.__name__}: {exc}")
        raise LedgerStorageError(str(exc)) from exc


def storage_guarded(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with translate_storage_errors(self.session):
            return method(self, *args, **kwargs)

    return wrapper


def _signed_amount():
    return case(
        (Transaction.type == TransactionType.purchase, TransactionLine.amount_cents),
        else_=-TransactionLine.amount_cents,
    )


def _active_lines(*columns, client_id: str, year: int):
    return (
        select(*columns)
        .select_from(TransactionLine)
        .join(Transaction, TransactionLine.transaction_id == Transaction.id)
        .where(
            Transaction.client_id == client_id,
            Transaction.year == year,
            Transaction.voided_at.is_(None),
        )
    )


def _load_budget_year(
    session: Session, client_id: str, year: int
) -> Optional[BudgetYear]:
    return session.scalar(
        select(BudgetYear)
        .options(selectinload(BudgetYear.categories).selectinload(BudgetCategory.items))
        .where(BudgetYear.client_id == client_id, BudgetYear.year == year)
    )


def recompute_budget_totals(
    session: Session, client_id: str, year: int
) -> Optional[BudgetYear]:
    budget = _load_budget_year(session, client_id, year)
    if budget is None:
        return None
    budget.totals_allocated_cents = sum(c.allocated_cents for c in budget.categories)
    budget.totals_spent_cents = max(
        0, Aggregator(session).net_spend_total(client_id, year)
    )
    return budget


def rebuild_budget_totals(session: Session) -> int:
    keys = session.execute(select(BudgetYear.client_id, BudgetYear.year)).all()
    for row in keys:
        recompute_budget_totals(session, row.client_id, row.year)
    session.commit()
    return len(keys)


@dataclass(frozen=True)
class RefundableLine:
    purchase_transaction_id: int
    purchase_date: date
    line_id: int
    category_id: str
    care_item_slug: str
    label: Optional[str]
    original_cents: int
    refunded_cents: int
    remaining_cents: int


@dataclass(frozen=True)
class CategoryRow:
    category_id: str
    item: str
    category: str
    allocated: int
    spent: int


@dataclass(frozen=True)
class BudgetSummary:
    annual_allocated: int
    spent: int
    remaining: int
    surplus: int
    opening_carryover: float = 0.0

    @classmethod
    def zero(cls) -> "BudgetSummary":
        return cls(annual_allocated=0, spent=0, remaining=0, surplus=0)


@dataclass(frozen=True)
class CareItemRow:
    care_item_slug: str
    label: str
    allocated: int
    spent: int


@dataclass(frozen=True)
class CategoryDetail:
    category_name: str
    allocated: int
    spent: int
    items: list[CareItemRow]


class RefundMatcher:
    def __init__(self, session: Session) -> None:
        self.session = session

    def refunded_by_line(self, client_id: str, year: int) -> dict[LineKey, int]:
        stmt = (
            _active_lines(
                TransactionLine.refund_of_transaction_id,
                TransactionLine.refund_of_line_id,
                func.coalesce(func.sum(TransactionLine.amount_cents), 0).label(
                    "refunded"
                ),
                client_id=client_id,
                year=year,
            )
            .where(Transaction.type == TransactionType.refund)
            .group_by(
                TransactionLine.refund_of_transaction_id,
                TransactionLine.refund_of_line_id,
            )
        )
        return {
            (row.refund_of_transaction_id, row.refund_of_line_id): int(
                row.refunded or 0
            )
            for row in self.session.execute(stmt)
        }

    def refunded_total(self, purchase_transaction_id: int, line_id: int) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(TransactionLine.amount_cents), 0))
                .select_from(TransactionLine)
                .join(Transaction, TransactionLine.transaction_id == Transaction.id)
                .where(
                    TransactionLine.refund_of_transaction_id
                    == purchase_transaction_id,
                    TransactionLine.refund_of_line_id == line_id,
                    Transaction.type == TransactionType.refund,
                    Transaction.voided_at.is_(None),
                )
            ).scalar_one()
            or 0
        )

    def refundable_lines(self, client_id: str, year: int) -> list[RefundableLine]:
        stmt = (
            _active_lines(
                Transaction.id.label("purchase_transaction_id"),
                Transaction.date.label("purchase_date"),
                TransactionLine.id.label("line_id"),
                TransactionLine.category_id,
                TransactionLine.care_item_slug,
                TransactionLine.label,
                TransactionLine.amount_cents,
                client_id=client_id,
                year=year,
            )
            .where(Transaction.type == TransactionType.purchase)
            .order_by(Transaction.date, Transaction.id, TransactionLine.id)
        )
        purchase_lines = self.session.execute(stmt).all()
        if not purchase_lines:
            return []

        refunded = self.refunded_by_line(client_id, year)
        out: list[RefundableLine] = []
        for row in purchase_lines:
            key = (row.purchase_transaction_id, row.line_id)
            refunded_cents = refunded.get(key, 0)
            remaining = max(0, row.amount_cents - refunded_cents)
            if remaining <= 0:
                continue
            out.append(
                RefundableLine(
                    purchase_transaction_id=row.purchase_transaction_id,
                    purchase_date=row.purchase_date,
                    line_id=row.line_id,
                    category_id=row.category_id,
                    care_item_slug=(row.care_item_slug or "").lower(),
                    label=row.label,
                    original_cents=row.amount_cents,
                    refunded_cents=refunded_cents,
                    remaining_cents=remaining,
                )
            )
        return out


class Aggregator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def net_spend_by_category(self, client_id: str, year: int) -> dict[str, int]:
        stmt = (
            _active_lines(
                TransactionLine.category_id,
                func.coalesce(func.sum(_signed_amount()), 0).label("spent"),
                client_id=client_id,
                year=year,
            )
            .group_by(TransactionLine.category_id)
        )
        return {
            row.category_id: int(row.spent or 0) for row in self.session.execute(stmt)
        }

    def net_spend_by_care_item(
        self, client_id: str, year: int, category_id: str
    ) -> dict[str, tuple[int, Optional[str]]]:
        stmt = (
            _active_lines(
                TransactionLine.care_item_slug,
                func.max(TransactionLine.label).label("label"),
                func.coalesce(func.sum(_signed_amount()), 0).label("spent"),
                client_id=client_id,
                year=year,
            )
            .where(TransactionLine.category_id == category_id)
            .group_by(TransactionLine.care_item_slug)
        )
        return {
            row.care_item_slug: (int(row.spent or 0), row.label)
            for row in self.session.execute(stmt)
        }

    def net_spend_total(self, client_id: str, year: int) -> int:
        return sum(self.net_spend_by_category(client_id, year).values())

    def category_rows(self, client_id: str, year: int) -> list[CategoryRow]:
        budget = _load_budget_year(self.session, client_id, year)
        if budget is None:
            return []
        spent_by_category = self.net_spend_by_category(client_id, year)

        rows: list[CategoryRow] = []
        for cat in budget.categories:
            name = (cat.category_name or UNKNOWN_CATEGORY).strip() or UNKNOWN_CATEGORY
            rows.append(
                CategoryRow(
                    category_id=cat.category_id,
                    item=name,
                    category=name,
                    allocated=max(0, cents_to_units(cat.allocated_cents)),
                    spent=cents_to_units(spent_by_category.get(cat.category_id, 0)),
                )
            )

        known = {cat.category_id for cat in budget.categories}
        orphans = sorted(
            (category_id, spent)
            for category_id, spent in spent_by_category.items()
            if category_id not in known and spent != 0
        )
        for category_id, spent in orphans:
            logger.warning(
                f"unallocated_category_spend: client={client_id} year={year} "
                f"category={category_id} spent_cents={spent}"
            )
            rows.append(
                CategoryRow(
                    category_id=category_id,
                    item=UNKNOWN_CATEGORY,
                    category=UNKNOWN_CATEGORY,
                    allocated=0,
                    spent=cents_to_units(spent),
                )
            )
        return rows

    def summary(self, client_id: str, year: int) -> BudgetSummary:
        budget = _load_budget_year(self.session, client_id, year)
        if budget is None:
            return BudgetSummary.zero()

        annual = cents_to_units(budget.annual_allocated_cents)
        # transactions are authoritative, totals_spent_cents is only a cache
        spent = cents_to_units(max(0, self.net_spend_total(client_id, year)))
        allocated_cents = sum(c.allocated_cents for c in budget.categories)
        if budget.surplus_override_cents is not None:
            surplus_cents = budget.surplus_override_cents
        else:
            surplus_cents = budget.annual_allocated_cents - allocated_cents
        return BudgetSummary(
            annual_allocated=annual,
            spent=spent,
            remaining=max(0, annual - spent),
            surplus=max(0, cents_to_units(surplus_cents)),
            opening_carryover=cents_to_amount(budget.opening_carryover_cents or 0),
        )

    def category_detail(
        self, client_id: str, year: int, category_id: str
    ) -> CategoryDetail:
        budget = _load_budget_year(self.session, client_id, year)
        budget_cat = None
        if budget is not None:
            budget_cat = next(
                (c for c in budget.categories if c.category_id == category_id), None
            )
        name = ((budget_cat.category_name if budget_cat else None) or "").strip()
        spent_by_slug = self.net_spend_by_care_item(client_id, year, category_id)

        items: list[CareItemRow] = []
        seen: set[str] = set()
        for bi in budget_cat.items if budget_cat else []:
            spent, agg_label = spent_by_slug.get(bi.care_item_slug, (0, None))
            label = (
                (bi.label or "").strip()
                or (agg_label or "").strip()
                or bi.care_item_slug
            )
            items.append(
                CareItemRow(
                    care_item_slug=bi.care_item_slug,
                    label=label,
                    allocated=cents_to_units(bi.allocated_cents),
                    spent=cents_to_units(spent),
                )
            )
            seen.add(bi.care_item_slug)

        for slug, (spent, agg_label) in spent_by_slug.items():
            if slug in seen:
                continue
            items.append(
                CareItemRow(
                    care_item_slug=slug,
                    label=(agg_label or "").strip() or slug,
                    allocated=0,
                    spent=cents_to_units(spent),
                )
            )

        items.sort(key=lambda row: row.label.lower())
        return CategoryDetail(
            category_name=name or "Category",
            allocated=cents_to_units(budget_cat.allocated_cents) if budget_cat else 0,
            spent=sum(row.spent for row in items),
            items=items,
        )


class LedgerStore:
    def __init__(
        self,
        session: Session,
        notifier: Optional[ChangeNotifier] = None,
        *,
        locks: Optional[KeyedLock] = None,
        lock_past_years: Optional[bool] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.locks = locks if locks is not None else refund_locks
        if lock_past_years is None:
            lock_past_years = get_settings().lock_past_years
        self.lock_past_years = lock_past_years
        self.today = today

    # -- validation -----------------------------------------------------

    @staticmethod
    def _check_identity(client_id: str, year: int) -> None:
        if not isinstance(client_id, str) or not client_id.strip():
            raise LedgerValidationError("clientId is required")
        if isinstance(year, bool) or not isinstance(year, int):
            raise LedgerValidationError("year must be an integer")
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise LedgerValidationError(f"year must be between {MIN_YEAR} and {MAX_YEAR}")

    @staticmethod
    def _check_non_negative(value: Optional[int], field: str) -> None:
        if value is not None and value < 0:
            raise LedgerValidationError(f"{field} must not be negative")

    def _check_writable_year(self, year: int) -> None:
        if self.lock_past_years and year < self.today().year:
            raise LedgerConflictError("Past year is read-only")

    # -- persistence helpers -------------------------------------------

    def _commit(self, client_id: str, year: int, action: str) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise LedgerConflictError(f"Concurrent write rejected: {action}") from exc
        except (OperationalError, DBAPIError) as exc:
            self.session.rollback()
            raise LedgerStorageError(str(exc)) from exc
        logger.info(f"ledger_write: action={action} client={client_id} year={year}")
        if self.notifier is not None:
            self.notifier.publish_change(client_id, year)

    def _flush(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise LedgerConflictError("Concurrent write rejected") from exc
        except (OperationalError, DBAPIError) as exc:
            self.session.rollback()
            raise LedgerStorageError(str(exc)) from exc

    # -- budget years -----------------------------------------------------

    @storage_guarded
    def get_budget_year(self, client_id: str, year: int) -> Optional[BudgetYear]:
        return _load_budget_year(self.session, client_id, year)

    def _get_or_create_budget_year(self, client_id: str, year: int) -> BudgetYear:
        budget = _load_budget_year(self.session, client_id, year)
        if budget is not None:
            return budget
        budget = BudgetYear(
            client_id=client_id,
            year=year,
            annual_allocated_cents=0,
            opening_carryover_cents=0,
            totals_allocated_cents=0,
            totals_spent_cents=0,
            categories=[],
        )
        self.session.add(budget)
        self._flush()
        logger.info(f"budget_year_created: client={client_id} year={year}")
        return budget

    @staticmethod
    def _find_category(
        budget: BudgetYear, category_id: str
    ) -> Optional[BudgetCategory]:
        return next(
            (c for c in budget.categories if c.category_id == category_id), None
        )

    @staticmethod
    def _apply_category_amount(
        budget: BudgetYear,
        category_id: str,
        amount_cents: int,
        category_name: Optional[str],
    ) -> BudgetCategory:
        existing = LedgerStore._find_category(budget, category_id)
        if existing is None:
            existing = BudgetCategory(
                category_id=category_id,
                category_name=category_name or "Category",
                allocated_cents=amount_cents,
                position=len(budget.categories),
                items=[],
            )
            budget.categories.append(existing)
            return existing

        if category_name:
            existing.category_name = category_name
        existing.allocated_cents = amount_cents
        items_total = sum(i.allocated_cents for i in existing.items)
        if items_total > amount_cents and items_total > 0:
            for item in existing.items:
                item.allocated_cents = item.allocated_cents * amount_cents // items_total
        return existing

    def _finish_allocation(self, budget: BudgetYear, action: str) -> BudgetYear:
        self._flush()
        recompute_budget_totals(self.session, budget.client_id, budget.year)
        self._commit(budget.client_id, budget.year, action)
        return budget

    @storage_guarded
    def upsert_budget_allocation(
        self, client_id: str, year: int, data: BudgetAllocationIn
    ) -> BudgetYear:
        self._check_identity(client_id, year)
        self._check_non_negative(data.annual_allocated_cents, "annualAllocated")
        self._check_non_negative(data.opening_carryover_cents, "openingCarryover")
        self._check_non_negative(data.surplus_override_cents, "surplus")
        for cat in data.categories:
            if not cat.category_id or not cat.category_id.strip():
                raise LedgerValidationError("categoryId is required")
            self._check_non_negative(
                cat.allocated_cents, f"allocation for {cat.category_id}"
            )
        self._check_writable_year(year)

        budget = self._get_or_create_budget_year(client_id, year)
        if data.annual_allocated_cents is not None:
            budget.annual_allocated_cents = data.annual_allocated_cents
        if data.opening_carryover_cents is not None:
            budget.opening_carryover_cents = data.opening_carryover_cents
        if data.surplus_override_cents is not None:
            budget.surplus_override_cents = data.surplus_override_cents
        if data.rolled_from_year is not None:
            budget.rolled_from_year = data.rolled_from_year
        for cat in data.categories:
            self._apply_category_amount(
                budget, cat.category_id, cat.allocated_cents, cat.category_name
            )
        return self._finish_allocation(budget, "upsert_allocation")

    @storage_guarded
    def set_annual(self, client_id: str, year: int, amount_cents: int) -> BudgetYear:
        self._check_identity(client_id, year)
        self._check_non_negative(amount_cents, "annualAllocated")
        self._check_writable_year(year)
        budget = self._get_or_create_budget_year(client_id, year)
        budget.annual_allocated_cents = amount_cents
        return self._finish_allocation(budget, "set_annual")

    @storage_guarded
    def set_category(
        self,
        client_id: str,
        year: int,
        category_id: str,
        amount_cents: int,
        category_name: Optional[str] = None,
    ) -> BudgetYear:
        self._check_identity(client_id, year)
        if not category_id:
            raise LedgerValidationError("categoryId is required")
        self._check_non_negative(amount_cents, "allocation")
        self._check_writable_year(year)
        budget = self._get_or_create_budget_year(client_id, year)
        self._apply_category_amount(budget, category_id, amount_cents, category_name)
        return self._finish_allocation(budget, "set_category")

    @storage_guarded
    def set_item(
        self,
        client_id: str,
        year: int,
        category_id: str,
        care_item_slug: str,
        amount_cents: int,
        label: Optional[str] = None,
    ) -> BudgetYear:
        self._check_identity(client_id, year)
        if not care_item_slug or not care_item_slug.strip():
            raise LedgerValidationError("careItemSlug is required")
        self._check_non_negative(amount_cents, "allocation")
        self._check_writable_year(year)

        budget = _load_budget_year(self.session, client_id, year)
        cat = self._find_category(budget, category_id) if budget else None
        if cat is None:
            raise LedgerReferenceError("Category not found")
        slug = care_item_slug.strip().lower()
        existing = next((i for i in cat.items if i.care_item_slug == slug), None)
        others = sum(i.allocated_cents for i in cat.items if i is not existing)
        if others + amount_cents > cat.allocated_cents:
            raise LedgerValidationError("Care Items exceed category allocation")

        if existing is None:
            cat.items.append(
                BudgetCareItem(
                    care_item_slug=slug, label=label or slug, allocated_cents=amount_cents
                )
            )
        else:
            if label:
                existing.label = label
            existing.allocated_cents = amount_cents
        return self._finish_allocation(budget, "set_item")

    @storage_guarded
    def release_category(
        self, client_id: str, year: int, category_id: str
    ) -> BudgetYear:
        self._check_identity(client_id, year)
        self._check_writable_year(year)
        budget = _load_budget_year(self.session, client_id, year)
        cat = self._find_category(budget, category_id) if budget else None
        if cat is None:
            raise LedgerReferenceError("Category not found")
        now = datetime.utcnow()
        cat.allocated_cents = 0
        cat.released_at = now
        for item in cat.items:
            item.allocated_cents = 0
        return self._finish_allocation(budget, "release_category")

    @storage_guarded
    def release_item(
        self, client_id: str, year: int, category_id: str, care_item_slug: str
    ) -> BudgetYear:
        self._check_identity(client_id, year)
        self._check_writable_year(year)
        budget = _load_budget_year(self.session, client_id, year)
        cat = self._find_category(budget, category_id) if budget else None
        if cat is None:
            raise LedgerReferenceError("Category not found")
        slug = (care_item_slug or "").strip().lower()
        item = next((i for i in cat.items if i.care_item_slug == slug), None)
        if item is None:
            raise LedgerReferenceError("Care Item not found")
        item.allocated_cents = 0
        item.released_at = datetime.utcnow()
        return self._finish_allocation(budget, "release_item")

    # -- transactions -----------------------------------------------------

    @storage_guarded
    def record_transaction(
        self,
        client_id: str,
        year: int,
        data: Union[PurchaseIn, RefundIn],
        user_id: str,
    ) -> Transaction:
        self._check_identity(client_id, year)
        if not isinstance(user_id, str) or not user_id.strip():
            raise LedgerValidationError("createdByUserId is required")
        if data.date.year != year:
            raise LedgerValidationError("Transaction date must fall in the budget year")
        if not data.lines:
            raise LedgerValidationError("At least one line required")
        for line in data.lines:
            if line.amount_cents <= 0:
                raise LedgerValidationError("Line amounts must be positive")
        self._check_writable_year(year)

        if isinstance(data, RefundIn):
            keys = [(ln.refund_of_trans_id, ln.refund_of_line_id) for ln in data.lines]
            with self.locks.hold(keys):
                return self._record_refund(client_id, year, data, user_id)
        return self._record_purchase(client_id, year, data, user_id)

    def _record_purchase(
        self, client_id: str, year: int, data: PurchaseIn, user_id: str
    ) -> Transaction:
        for line in data.lines:
            if not line.category_id or not line.category_id.strip():
                raise LedgerValidationError("categoryId is required on every line")
            if not line.care_item_slug:
                raise LedgerValidationError("careItemSlug is required on every line")

        txn = Transaction(
            client_id=client_id,
            year=year,
            date=data.date,
            type=TransactionType.purchase,
            created_by_user_id=user_id,
            receipt_url=data.receipt_url,
            note=data.note,
            lines=[
                TransactionLine(
                    category_id=line.category_id,
                    care_item_slug=line.care_item_slug.lower(),
                    label=line.label or line.care_item_slug,
                    amount_cents=line.amount_cents,
                )
                for line in data.lines
            ],
        )
        self.session.add(txn)
        self._flush()
        recompute_budget_totals(self.session, client_id, year)
        self._commit(client_id, year, "purchase")
        return txn

    def _resolve_purchase_line(
        self, client_id: str, year: int, purchase_transaction_id: int, line_id: int
    ):
        row = self.session.execute(
            select(
                TransactionLine.id,
                TransactionLine.category_id,
                TransactionLine.care_item_slug,
                TransactionLine.label,
                TransactionLine.amount_cents,
                TransactionLine.refund_version,
                Transaction.client_id,
                Transaction.year,
                Transaction.type,
                Transaction.voided_at,
            )
            .join_from(
                TransactionLine,
                Transaction,
                TransactionLine.transaction_id == Transaction.id,
            )
            .where(
                TransactionLine.id == line_id,
                TransactionLine.transaction_id == purchase_transaction_id,
            )
        ).first()
        if row is None or row.client_id != client_id:
            raise LedgerReferenceError("Original line not found")
        if row.type != TransactionType.purchase or row.voided_at is not None:
            raise LedgerReferenceError("Original purchase not found")
        if row.year != year:
            raise LedgerReferenceError(
                "Refund must be in the same year as original purchase"
            )
        return row

    def _claim_purchase_line(self, line_id: int, seen_version: int) -> bool:
        try:
            result = self.session.execute(
                update(TransactionLine)
                .where(
                    TransactionLine.id == line_id,
                    TransactionLine.refund_version == seen_version,
                )
                .values(refund_version=TransactionLine.refund_version + 1)
                .execution_options(synchronize_session=False)
            )
        except OperationalError as exc:
            raise LedgerConflictError("Purchase line is being refunded elsewhere") from exc
        return result.rowcount == 1

    def _record_refund(
        self, client_id: str, year: int, data: RefundIn, user_id: str
    ) -> Transaction:
        matcher = RefundMatcher(self.session)
        requested: dict[LineKey, int] = {}
        for line in data.lines:
            key = (line.refund_of_trans_id, line.refund_of_line_id)
            requested[key] = requested.get(key, 0) + line.amount_cents

        try:
            resolved = {}
            for key, amount in requested.items():
                # version is read before the sum so a racing claim invalidates it
                original = self._resolve_purchase_line(client_id, year, *key)
                remaining = max(0, original.amount_cents - matcher.refunded_total(*key))
                if amount > remaining:
                    raise OverRefundError(key[0], key[1], amount, remaining)
                resolved[key] = original

            for key, original in resolved.items():
                if not self._claim_purchase_line(original.id, original.refund_version):
                    raise LedgerConflictError(
                        f"Purchase line {key[1]} changed during refund; retry"
                    )
        except LedgerError:
            self.session.rollback()
            raise

        refund_lines: list[TransactionLine] = []
        for line in data.lines:
            original = resolved[(line.refund_of_trans_id, line.refund_of_line_id)]
            refund_lines.append(
                TransactionLine(
                    category_id=original.category_id,
                    care_item_slug=original.care_item_slug,
                    label=line.label or original.label or original.care_item_slug,
                    amount_cents=line.amount_cents,
                    refund_of_transaction_id=line.refund_of_trans_id,
                    refund_of_line_id=line.refund_of_line_id,
                )
            )

        txn = Transaction(
            client_id=client_id,
            year=year,
            date=data.date,
            type=TransactionType.refund,
            created_by_user_id=user_id,
            receipt_url=data.receipt_url,
            note=data.note,
            lines=refund_lines,
        )
        self.session.add(txn)
        self._flush()
        recompute_budget_totals(self.session, client_id, year)
        self._commit(client_id, year, "refund")
        return txn

    @storage_guarded
    def void_transaction(
        self, transaction_id: int, client_id: Optional[str] = None
    ) -> Transaction:
        txn = self.session.get(Transaction, transaction_id, populate_existing=True)
        if txn is None or (client_id is not None and txn.client_id != client_id):
            raise LedgerReferenceError("Transaction not found")
        if txn.voided_at is not None:
            return txn
        self._check_writable_year(txn.year)

        keys = (
            [(txn.id, line.id) for line in txn.lines]
            if txn.type == TransactionType.purchase
            else []
        )
        with self.locks.hold(keys):
            if txn.type == TransactionType.purchase:
                self._claim_purchase_for_void(txn.id)
            txn.voided_at = datetime.utcnow()
            self._flush()
            recompute_budget_totals(self.session, txn.client_id, txn.year)
            self._commit(txn.client_id, txn.year, "void")
        return txn

    def _active_refund_count(self, purchase_transaction_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(TransactionLine.id))
                .select_from(TransactionLine)
                .join(Transaction, TransactionLine.transaction_id == Transaction.id)
                .where(
                    TransactionLine.refund_of_transaction_id
                    == purchase_transaction_id,
                    Transaction.voided_at.is_(None),
                )
            ).scalar_one()
            or 0
        )

    def _claim_purchase_for_void(self, purchase_transaction_id: int) -> None:
        # versions are read before the refund count so a refund committed in
        # between fails the claim below
        seen = self.session.execute(
            select(TransactionLine.id, TransactionLine.refund_version).where(
                TransactionLine.transaction_id == purchase_transaction_id
            )
        ).all()
        try:
            if self._active_refund_count(purchase_transaction_id):
                raise LedgerConflictError(
                    "Purchase has active refunds; void the refunds first"
                )
            for row in seen:
                if not self._claim_purchase_line(row.id, row.refund_version):
                    raise LedgerConflictError(
                        f"Purchase line {row.id} was refunded during void; retry"
                    )
        except LedgerError:
            self.session.rollback()
            raise

    # -- listings ---------------------------------------------------------

    @storage_guarded
    def list_years_with_activity(self, client_id: str) -> list[int]:
        stmt = union(
            select(BudgetYear.year).where(BudgetYear.client_id == client_id),
            select(Transaction.year).where(Transaction.client_id == client_id),
        )
        years = {int(y) for y in self.session.execute(stmt).scalars()}
        return sorted(years, reverse=True)

    @storage_guarded
    def list_transactions(self, client_id: str, year: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.lines))
            .where(
                Transaction.client_id == client_id,
                Transaction.year == year,
                Transaction.voided_at.is_(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()


class BudgetQueryService:
    def __init__(
        self,
        session: Session,
        notifier: Optional[ChangeNotifier] = None,
        *,
        store: Optional[LedgerStore] = None,
    ) -> None:
        self.session = session
        self.store = store or LedgerStore(session, notifier)
        self.aggregator = Aggregator(session)
        self.matcher = RefundMatcher(session)

    @storage_guarded
    def get_category_rows(self, client_id: str, year: int) -> list[CategoryRow]:
        return self.aggregator.category_rows(client_id, year)

    @storage_guarded
    def get_summary(self, client_id: str, year: int) -> BudgetSummary:
        return self.aggregator.summary(client_id, year)

    @storage_guarded
    def get_full_budget(
        self, client_id: str, year: int
    ) -> tuple[BudgetSummary, list[CategoryRow]]:
        return (
            self.aggregator.summary(client_id, year),
            self.aggregator.category_rows(client_id, year),
        )

    @storage_guarded
    def get_category_detail(
        self, client_id: str, year: int, category_id: str
    ) -> CategoryDetail:
        return self.aggregator.category_detail(client_id, year, category_id)

    @storage_guarded
    def get_refundable_lines(self, client_id: str, year: int) -> list[RefundableLine]:
        return self.matcher.refundable_lines(client_id, year)

    @storage_guarded
    def get_available_years(self, client_id: str) -> list[int]:
        return self.store.list_years_with_activity(client_id)

    @storage_guarded
    def list_transactions(self, client_id: str, year: int) -> list[Transaction]:
        return self.store.list_transactions(client_id, year)

    @storage_guarded
    def record_purchase(
        self, client_id: str, year: int, data: PurchaseIn, user_id: str
    ) -> Transaction:
        return self.store.record_transaction(client_id, year, data, user_id)

    @storage_guarded
    def record_refund(
        self, client_id: str, year: int, data: RefundIn, user_id: str
    ) -> Transaction:
        return self.store.record_transaction(client_id, year, data, user_id)

    @storage_guarded
    def void_transaction(
        self, transaction_id: int, client_id: Optional[str] = None
    ) -> Transaction:
        return self.store.void_transaction(transaction_id, client_id)

    @storage_guarded
    def upsert_budget_allocation(
        self, client_id: str, year: int, data: BudgetAllocationIn
    ) -> BudgetYear:
        return self.store.upsert_budget_allocation(client_id, year, data)

    @storage_guarded
    def manage_budget(self, client_id: str, data: ManageBudgetIn) -> BudgetYear:
        if data.action == "setAnnual":
            return self.store.set_annual(client_id, data.year, data.amount_cents or 0)
        if data.action == "setCategory":
            return self.store.set_category(
                client_id,
                data.year,
                data.category_id or "",
                data.amount_cents or 0,
                data.category_name,
            )
        if data.action == "setItem":
            return self.store.set_item(
                client_id,
                data.year,
                data.category_id or "",
                data.care_item_slug or "",
                data.amount_cents or 0,
                data.label,
            )
        if data.action == "releaseCategory":
            return self.store.release_category(
                client_id, data.year, data.category_id or ""
            )
        if data.action == "releaseItem":
            return self.store.release_item(
                client_id, data.year, data.category_id or "", data.care_item_slug or ""
            )
        raise LedgerValidationError("Invalid action")
