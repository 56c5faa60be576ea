import asyncio
import logging
from datetime import date
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal
from models import Transaction
from notifier import ChangeNotifier, ping_event
from scheduler import SchedulerManager
from schemas import (
    BudgetAllocationIn,
    BudgetSummaryOut,
    CareItemRowOut,
    CategoryDetailOut,
    CategoryRowOut,
    FullBudgetOut,
    ManageBudgetIn,
    RefundableLineOut,
    TransactionCreatedOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    BudgetQueryService,
    BudgetSummary,
    CategoryRow,
    LedgerConflictError,
    LedgerError,
    LedgerReferenceError,
    LedgerStorageError,
    LedgerValidationError,
    OverRefundError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Care Budget Ledger")
notifier = ChangeNotifier(queue_size=get_settings().subscriber_queue_size)

API_PREFIX = "/api/v1/clients/{client_id}"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_notifier() -> ChangeNotifier:
    return notifier


def get_service(
    db: Session = Depends(get_db),
    change_notifier: ChangeNotifier = Depends(get_notifier),
) -> BudgetQueryService:
    return BudgetQueryService(db, change_notifier)


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def ledger_http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, OverRefundError):
        return HTTPException(
            status_code=422,
            detail={
                "error": "Refund exceeds remaining refundable",
                "purchaseTransId": exc.purchase_transaction_id,
                "lineId": exc.line_id,
                "remainingRefundable": exc.remaining_cents,
            },
        )
    if isinstance(exc, LedgerValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, LedgerReferenceError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, LedgerConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, LedgerStorageError):
        logger.error(f"ledger_storage_error: {exc}")
        return HTTPException(status_code=503, detail="Ledger storage unavailable")
    return HTTPException(status_code=400, detail=str(exc))


def resolve_year(year: Optional[int]) -> int:
    return year if year is not None else date.today().year


def _read_in_worker(factory: sessionmaker, fn: Callable, *args):
    # the worker owns its session so an abandoned read closes it itself
    with factory() as session:
        return fn(BudgetQueryService(session), *args)


async def run_read(factory: sessionmaker, fn: Callable, *args):
    """Run a facade read in the threadpool, abandoning it after the read timeout."""
    timeout = get_settings().read_timeout_secs
    try:
        return await asyncio.wait_for(
            run_in_threadpool(_read_in_worker, factory, fn, *args), timeout
        )
    except asyncio.TimeoutError as exc:
        logger.warning(f"read_timeout: fn={getattr(fn, '__name__', fn)} args={args}")
        raise HTTPException(status_code=504, detail="Budget query timed out") from exc
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc


def summary_out(summary: BudgetSummary) -> BudgetSummaryOut:
    return BudgetSummaryOut(
        annual_allocated=summary.annual_allocated,
        spent=summary.spent,
        remaining=summary.remaining,
        surplus=summary.surplus,
        opening_carryover=summary.opening_carryover,
    )


def row_out(row: CategoryRow) -> CategoryRowOut:
    return CategoryRowOut(
        category_id=row.category_id,
        item=row.item,
        category=row.category,
        allocated=row.allocated,
        spent=row.spent,
    )


def transaction_out(txn: Transaction) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        client_id=txn.client_id,
        type=txn.type.value,
        date=txn.date,
        made_by=txn.created_by_user_id,
        items=[line.label or line.care_item_slug for line in txn.lines],
        receipt=txn.receipt_url or "",
    )


# -- reads ----------------------------------------------------------------


@app.get(f"{API_PREFIX}/budget/summary", response_model=BudgetSummaryOut)
async def budget_summary(
    client_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    summary = await run_read(
        factory, BudgetQueryService.get_summary, client_id, resolve_year(year)
    )
    return summary_out(summary)


@app.get(f"{API_PREFIX}/budget", response_model=list[CategoryRowOut])
async def budget_rows(
    client_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    rows = await run_read(
        factory, BudgetQueryService.get_category_rows, client_id, resolve_year(year)
    )
    return [row_out(row) for row in rows]


@app.get(f"{API_PREFIX}/budget/full", response_model=FullBudgetOut)
async def budget_full(
    client_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    summary, rows = await run_read(
        factory, BudgetQueryService.get_full_budget, client_id, resolve_year(year)
    )
    return FullBudgetOut(summary=summary_out(summary), rows=[row_out(r) for r in rows])


@app.get(
    f"{API_PREFIX}/budget/category/{{category_id}}", response_model=CategoryDetailOut
)
async def budget_category_detail(
    client_id: str,
    category_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    detail = await run_read(
        factory,
        BudgetQueryService.get_category_detail,
        client_id,
        resolve_year(year),
        category_id,
    )
    return CategoryDetailOut(
        category_name=detail.category_name,
        allocated=detail.allocated,
        spent=detail.spent,
        items=[
            CareItemRowOut(
                care_item_slug=item.care_item_slug,
                label=item.label,
                allocated=item.allocated,
                spent=item.spent,
            )
            for item in detail.items
        ],
    )


@app.get(f"{API_PREFIX}/budget/years", response_model=list[int])
async def budget_years(
    client_id: str, factory: sessionmaker = Depends(get_session_factory)
):
    return await run_read(factory, BudgetQueryService.get_available_years, client_id)


@app.get(
    f"{API_PREFIX}/transaction/refundables", response_model=list[RefundableLineOut]
)
async def transaction_refundables(
    client_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    lines = await run_read(
        factory, BudgetQueryService.get_refundable_lines, client_id, resolve_year(year)
    )
    return [
        RefundableLineOut(
            purchase_trans_id=line.purchase_transaction_id,
            purchase_date=line.purchase_date,
            line_id=line.line_id,
            category_id=line.category_id,
            care_item_slug=line.care_item_slug,
            label=line.label,
            original_amount=line.original_cents,
            refunded_so_far=line.refunded_cents,
            remaining_refundable=line.remaining_cents,
        )
        for line in lines
    ]


@app.get(f"{API_PREFIX}/transaction", response_model=list[TransactionOut])
async def transaction_list(
    client_id: str,
    year: Optional[int] = None,
    factory: sessionmaker = Depends(get_session_factory),
):
    txns = await run_read(
        factory, BudgetQueryService.list_transactions, client_id, resolve_year(year)
    )
    return [transaction_out(txn) for txn in txns]


# -- writes ---------------------------------------------------------------


@app.post(
    f"{API_PREFIX}/transaction",
    response_model=TransactionCreatedOut,
    status_code=201,
)
def transaction_create(
    client_id: str,
    payload: TransactionIn,
    year: Optional[int] = None,
    x_user_id: Optional[str] = Header(default=None),
    service: BudgetQueryService = Depends(get_service),
):
    target_year = year if year is not None else payload.date.year
    try:
        if payload.type == "Refund":
            txn = service.record_refund(client_id, target_year, payload, x_user_id)
        else:
            txn = service.record_purchase(client_id, target_year, payload, x_user_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return TransactionCreatedOut(id=txn.id)


@app.post(
    f"{API_PREFIX}/transaction/{{transaction_id}}/void",
    response_model=TransactionCreatedOut,
)
def transaction_void(
    client_id: str,
    transaction_id: int,
    service: BudgetQueryService = Depends(get_service),
):
    try:
        txn = service.void_transaction(transaction_id, client_id)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return TransactionCreatedOut(id=txn.id)


@app.put(f"{API_PREFIX}/budget", response_model=BudgetSummaryOut)
def budget_upsert(
    client_id: str,
    payload: BudgetAllocationIn,
    year: Optional[int] = None,
    service: BudgetQueryService = Depends(get_service),
):
    target_year = resolve_year(year)
    try:
        service.upsert_budget_allocation(client_id, target_year, payload)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return summary_out(service.get_summary(client_id, target_year))


@app.patch(f"{API_PREFIX}/budget/manage", response_model=BudgetSummaryOut)
def budget_manage(
    client_id: str,
    payload: ManageBudgetIn,
    service: BudgetQueryService = Depends(get_service),
):
    try:
        service.manage_budget(client_id, payload)
    except LedgerError as exc:
        raise ledger_http_error(exc) from exc
    return summary_out(service.get_summary(client_id, payload.year))


# -- live updates ---------------------------------------------------------


async def budget_event_stream(
    change_notifier: ChangeNotifier,
    client_id: str,
    year: int,
    keepalive_secs: float,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    async with change_notifier.subscription(client_id, year) as sub:
        yield ping_event().to_sse()
        async for event in sub.events(keepalive_secs):
            if is_disconnected is not None and await is_disconnected():
                logger.info(f"stream_closed: key={client_id}:{year}")
                break
            yield event.to_sse()


@app.get(f"{API_PREFIX}/budget/stream")
async def budget_stream(
    client_id: str,
    request: Request,
    year: Optional[int] = None,
    change_notifier: ChangeNotifier = Depends(get_notifier),
):
    stream = budget_event_stream(
        change_notifier,
        client_id,
        resolve_year(year),
        get_settings().keepalive_secs,
        request.is_disconnected,
    )
    return StreamingResponse(
        stream, media_type="text/event-stream", headers=SSE_HEADERS
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
