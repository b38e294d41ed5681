"""
Transaction export

CSV or JSON dump of one user's transactions, newest first, optionally
limited to a date range. end_date is inclusive of the whole day.
"""
import csv
import json
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.core.database import AsyncSessionLocal
from labelbay.core.exceptions import ValidationError
from labelbay.models.account import Transaction

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Transaction ID",
    "Type",
    "Amount",
    "Currency",
    "Status",
    "Description",
    "Created At",
    "Updated At",
]

EXPORT_FORMATS = ("csv", "json")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ExportResult:
    content: str
    media_type: str
    filename: str
    count: int


def _as_datetime(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime(TIMESTAMP_FORMAT) if value else ""


def _money(value: Any) -> str:
    return str(Decimal(str(value)).quantize(Decimal("0.01"))) if value is not None else "0.00"


def transaction_row(tx: Transaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "transaction_type": tx.transaction_type.value,
        "amount": _money(tx.amount),
        "currency": tx.currency or "USD",
        "status": tx.status.value,
        "provider": tx.provider,
        "reference": tx.transaction_reference,
        "balance_after": _money(tx.balance_after),
        "description": tx.description,
        "shipment_id": tx.shipment_id,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
        "updated_at": tx.updated_at.isoformat() if tx.updated_at else None,
    }


def render_csv(transactions: List[Transaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for tx in transactions:
        writer.writerow([
            tx.id,
            tx.transaction_type.value,
            _money(tx.amount),
            tx.currency or "USD",
            tx.status.value,
            tx.description or "",
            _fmt(tx.created_at),
            _fmt(tx.updated_at),
        ])
    return buffer.getvalue()


async def load_transactions(
    user_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> List[Transaction]:
    if start_date and end_date and end_date < start_date:
        raise ValidationError("end_date must not be before start_date", field="end_date")

    conditions = [Transaction.user_id == user_id]
    if start_date:
        conditions.append(Transaction.created_at >= _as_datetime(start_date))
    if end_date:
        conditions.append(Transaction.created_at < _as_datetime(end_date + timedelta(days=1)))

    factory = session_factory or AsyncSessionLocal
    async with factory() as db:
        result = await db.execute(
            select(Transaction)
            .where(and_(*conditions))
            .order_by(Transaction.created_at.desc(), Transaction.id)
        )
        return list(result.scalars().all())


async def export_transactions(
    user_id: str,
    export_format: str = "csv",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> ExportResult:
    """Render the user's transactions as CSV (default) or JSON."""
    export_format = (export_format or "csv").lower()
    if export_format not in EXPORT_FORMATS:
        raise ValidationError(f"Unsupported export format: {export_format}", field="format")

    transactions = await load_transactions(user_id, start_date, end_date, session_factory)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")

    if export_format == "json":
        content = json.dumps({"transactions": [transaction_row(tx) for tx in transactions]})
        media_type = "application/json"
    else:
        content = render_csv(transactions)
        media_type = "text/csv"

    logger.info(f"[EXPORT] user {user_id}: {len(transactions)} transactions as {export_format}")
    return ExportResult(
        content=content,
        media_type=media_type,
        filename=f"transactions-{stamp}.{export_format}",
        count=len(transactions),
    )
