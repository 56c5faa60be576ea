import datetime as dt
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PurchaseLineIn(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    category_id: str
    care_item_slug: str
    label: Optional[str] = None
    amount_cents: int

    @field_validator("care_item_slug")
    @classmethod
    def _normalize_slug(cls, value: str) -> str:
        return value.strip().lower()


class RefundLineIn(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    refund_of_trans_id: int
    refund_of_line_id: int
    label: Optional[str] = None
    amount_cents: int


class PurchaseIn(CamelModel):
    type: Literal["Purchase"] = "Purchase"
    date: dt.date
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    note: Optional[str] = None
    lines: list[PurchaseLineIn] = Field(default_factory=list)


class RefundIn(CamelModel):
    type: Literal["Refund"] = "Refund"
    date: dt.date
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    note: Optional[str] = None
    lines: list[RefundLineIn] = Field(default_factory=list)


TransactionIn = Annotated[Union[PurchaseIn, RefundIn], Field(discriminator="type")]


class CategoryAllocationIn(CamelModel):
    category_id: str
    category_name: Optional[str] = None
    allocated_cents: int


class BudgetAllocationIn(CamelModel):
    annual_allocated_cents: Optional[int] = None
    opening_carryover_cents: Optional[int] = None
    surplus_override_cents: Optional[int] = None
    rolled_from_year: Optional[int] = None
    categories: list[CategoryAllocationIn] = Field(default_factory=list)


class ManageBudgetIn(CamelModel):
    action: Literal[
        "setAnnual", "setCategory", "setItem", "releaseCategory", "releaseItem"
    ]
    year: int
    amount_cents: Optional[int] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    care_item_slug: Optional[str] = None
    label: Optional[str] = None


class BudgetSummaryOut(CamelModel):
    annual_allocated: int
    spent: int
    remaining: int
    surplus: int
    opening_carryover: float = 0


class CategoryRowOut(CamelModel):
    category_id: str
    item: str
    category: str
    allocated: int
    spent: int


class FullBudgetOut(CamelModel):
    summary: BudgetSummaryOut
    rows: list[CategoryRowOut]


class CareItemRowOut(CamelModel):
    care_item_slug: str
    label: str
    allocated: int
    spent: int


class CategoryDetailOut(CamelModel):
    category_name: str
    allocated: int
    spent: int
    items: list[CareItemRowOut]


class RefundableLineOut(CamelModel):
    purchase_trans_id: int
    purchase_date: dt.date
    line_id: int
    category_id: str
    care_item_slug: str
    label: Optional[str] = None
    original_amount: int
    refunded_so_far: int
    remaining_refundable: int


class TransactionOut(CamelModel):
    id: int
    client_id: str
    type: Literal["Purchase", "Refund"]
    date: dt.date
    made_by: str
    items: list[str]
    receipt: str = ""


class TransactionCreatedOut(CamelModel):
    ok: bool = True
    id: int
