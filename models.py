from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    purchase = "Purchase"
    refund = "Refund"


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType,
    name="transactiontype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BudgetYear(Base, TimestampMixin):
    __tablename__ = "budget_years"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    annual_allocated_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    opening_carryover_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    rolled_from_year: Mapped[Optional[int]] = mapped_column(Integer)
    surplus_override_cents: Mapped[Optional[int]] = mapped_column(Integer)
    totals_allocated_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    totals_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget_year",
        order_by="BudgetCategory.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("client_id", "year", name="uq_budget_year_client_year"),
        CheckConstraint(
            "annual_allocated_cents >= 0", name="ck_budget_year_annual_positive"
        ),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_year_id: Mapped[int] = mapped_column(
        ForeignKey("budget_years.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category_name: Mapped[Optional[str]] = mapped_column(String(120))
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    budget_year: Mapped["BudgetYear"] = relationship(
        "BudgetYear", back_populates="categories"
    )
    items: Mapped[list["BudgetCareItem"]] = relationship(
        "BudgetCareItem",
        back_populates="category",
        order_by="BudgetCareItem.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_year_id", "category_id", name="uq_budget_category_year_category"
        ),
        CheckConstraint(
            "allocated_cents >= 0", name="ck_budget_category_allocated_positive"
        ),
    )


class BudgetCareItem(Base, TimestampMixin):
    __tablename__ = "budget_care_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    care_item_slug: Mapped[str] = mapped_column(String(120), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(200))
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="items"
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_category_id", "care_item_slug", name="uq_budget_care_item_slug"
        ),
        CheckConstraint(
            "allocated_cents >= 0", name="ck_budget_care_item_allocated_positive"
        ),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    created_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    lines: Mapped[list["TransactionLine"]] = relationship(
        "TransactionLine",
        back_populates="transaction",
        foreign_keys="TransactionLine.transaction_id",
        order_by="TransactionLine.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_transactions_client_year", "client_id", "year"),
        Index("ix_transactions_client_year_type", "client_id", "year", "type"),
    )


class TransactionLine(Base):
    __tablename__ = "transaction_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[str] = mapped_column(String(64), nullable=False)
    care_item_slug: Mapped[str] = mapped_column(String(120), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(200))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    refund_of_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    refund_of_line_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transaction_lines.id")
    )
    # bumped by every refund claim against this purchase line
    refund_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="lines", foreign_keys=[transaction_id]
    )

    __table_args__ = (
        Index("ix_transaction_lines_category", "category_id"),
        Index(
            "ix_transaction_lines_refund_of",
            "refund_of_transaction_id",
            "refund_of_line_id",
        ),
        CheckConstraint("amount_cents > 0", name="ck_transaction_lines_amount_positive"),
        CheckConstraint(
            "(refund_of_transaction_id IS NULL) = (refund_of_line_id IS NULL)",
            name="ck_transaction_lines_refund_reference_pair",
        ),
    )
