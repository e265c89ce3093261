"""
Payment ledger: sale lifecycle, totals and ticket numbers.

The pure functions here (compute_totals, check_transition, ticket_numbers,
the report helpers) give the same answer for a record whether it was read
from the local cache or from the remote store. `PaymentLedger` wires them to
the sync engine, which decides where each read and write goes.
"""
import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pos_settings
from outbox import CREATE, UPDATE
from payment_records import (
    CASH,
    DELIVERY,
    DISCOUNT_PERCENTAGE,
    PAID,
    PAYMENT_METHODS,
    SCHEMA_VERSION,
    UNPAID,
    VOIDED,
    Discount,
    LineItem,
    PaymentRecord,
    merge_documents,
    now_millis,
)
from pos_errors import (
    InsufficientTender,
    InvalidTransition,
    RecordNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

VOID = 'void'
SUBMIT_ACTIONS = (CREATE, UPDATE, VOID)

_TRANSITIONS = {
    UNPAID: {PAID, VOIDED},
    PAID: {VOIDED},
    VOIDED: set(),
}

SaleInput = Union[PaymentRecord, Dict[str, Any]]


@dataclass(frozen=True)
class Totals:
    subtotal: float
    deliverable: float
    discount_amount: float
    final_total: float
    change: Optional[float] = None

    @property
    def display_change(self) -> float:
        return max(0.0, self.change or 0.0)


def compute_totals(line_items: Sequence[LineItem], channel: str, delivery_fee: float = 0.0,
                   discount: Optional[Discount] = None, payment_method: Optional[str] = None,
                   amount_tendered: Optional[float] = None) -> Totals:
    subtotal = math.fsum(item.unit_price * item.quantity for item in line_items)
    deliverable = subtotal + (delivery_fee or 0.0) if channel == DELIVERY else subtotal
    discount_amount = 0.0
    if discount is not None and payment_method == CASH:
        if discount.kind == DISCOUNT_PERCENTAGE:
            discount_amount = deliverable * discount.amount / 100
        else:
            discount_amount = discount.amount
    final_total = max(0.0, deliverable - discount_amount)
    change = None if amount_tendered is None else amount_tendered - final_total
    return Totals(subtotal, deliverable, discount_amount, final_total, change)


def totals_for(record: PaymentRecord, payment_method: Optional[str] = None,
               amount_tendered: Optional[float] = None) -> Totals:
    return compute_totals(
        record.line_items,
        record.sales_channel,
        record.delivery_fee,
        record.discount,
        payment_method if payment_method is not None else record.payment_method,
        amount_tendered,
    )


def check_transition(current: str, target: str):
    if target not in _TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, target)


def validate_sale(record: PaymentRecord):
    if not record.line_items:
        raise ValidationError("a sale needs at least one line item")
    for item in record.line_items:
        if item.unit_price < 0:
            raise ValidationError(f"line item {item.name!r} has a negative price")
        if item.quantity <= 0:
            raise ValidationError(f"line item {item.name!r} needs a positive quantity")
    if record.sales_channel == DELIVERY:
        info = record.delivery_info
        missing = []
        if info is None or not info.contact_name:
            missing.append('contact name')
        if info is None or not info.contact_number:
            missing.append('contact number')
        if info is None or not info.address:
            missing.append('address')
        if info is None or not info.time:
            missing.append('delivery time')
        if missing:
            raise ValidationError("delivery sale is missing " + ", ".join(missing))
        if info.fee < 0:
            raise ValidationError("delivery fee cannot be negative")
    if record.discount is not None and record.discount.kind == DISCOUNT_PERCENTAGE and record.discount.amount > 100:
        raise ValidationError("percentage discount cannot exceed 100")


def settle(record: PaymentRecord, payment_method: str, amount_tendered: Optional[float] = None) -> Totals:
    """Fill in the paid fields of `record`, enforcing the tender rule for cash."""
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"unknown payment method: {payment_method}")
    totals = totals_for(record, payment_method=payment_method)
    if payment_method == CASH:
        if amount_tendered is None or amount_tendered < totals.final_total:
            raise InsufficientTender(amount_tendered or 0.0, totals.final_total)
        tendered = float(amount_tendered)
    else:
        tendered = totals.final_total
    totals = totals_for(record, payment_method=payment_method, amount_tendered=tendered)
    record.payment_status = PAID
    record.payment_method = payment_method
    record.amount_tendered = tendered
    record.change_given = totals.change
    record.price = totals.final_total
    return totals


# ---------- ticket numbers ----------
def _unique_by_id(records: Iterable[PaymentRecord]) -> List[PaymentRecord]:
    seen = {}
    for record in records:
        if record.id and record.id not in seen:
            seen[record.id] = record
    return list(seen.values())


def ticket_numbers(records: Iterable[PaymentRecord]) -> Dict[str, int]:
    """Dense 1-based rank of every record by (createdAt, id)."""
    ordered = sorted(_unique_by_id(records), key=lambda r: (r.created_at, r.id))
    return {record.id: rank for rank, record in enumerate(ordered, start=1)}


def ticket_label(number: int, prefix: Optional[str] = None) -> str:
    return f"{prefix if prefix is not None else pos_settings.TICKET_PREFIX}{number:03d}"


# ---------- reports ----------
def record_day(record: PaymentRecord) -> dt.date:
    return dt.datetime.fromtimestamp(record.created_at / 1000).date()


def _day_bounds(day: dt.date):
    start = dt.datetime.combine(day, dt.time.min)
    end = dt.datetime.combine(day, dt.time.max)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def daily_summary(records: Iterable[PaymentRecord], day: dt.date) -> Dict[str, Any]:
    daily = [r for r in records if record_day(r) == day]
    paid = [r for r in daily if r.payment_status == PAID]
    return {
        'date': day.isoformat(),
        'transactions': len(daily),
        'paid': len(paid),
        'unpaid': sum(1 for r in daily if r.payment_status == UNPAID),
        'voided': sum(1 for r in daily if r.payment_status == VOIDED),
        'sales_total': math.fsum(r.price for r in paid),
    }


def void_report(records: Iterable[PaymentRecord], day: Optional[dt.date] = None,
                voided_by: Optional[str] = None) -> Dict[str, Any]:
    rows = [r for r in records if r.payment_status == VOIDED]
    if day is not None:
        rows = [r for r in rows if record_day(r) == day]
    if voided_by:
        rows = [r for r in rows if r.voided_by == voided_by]
    rows.sort(key=lambda r: r.voided_at or r.created_at, reverse=True)
    return {
        'count': len(rows),
        'total': math.fsum(r.price for r in rows),
        'actors': sorted({r.voided_by for r in rows if r.voided_by}),
        'records': rows,
    }


def filter_records(records: Iterable[PaymentRecord], customer: Optional[str] = None,
                   status: Optional[str] = None, date_from: Optional[dt.date] = None,
                   date_to: Optional[dt.date] = None, search: Optional[str] = None) -> List[PaymentRecord]:
    """Records matching every given filter, newest first."""
    out = list(records)
    if customer:
        out = [r for r in out if r.customer_name == customer]
    if status:
        out = [r for r in out if r.payment_status == status]
    if date_from:
        lo, _ = _day_bounds(date_from)
        out = [r for r in out if r.created_at >= lo]
    if date_to:
        _, hi = _day_bounds(date_to)
        out = [r for r in out if r.created_at <= hi]
    if search:
        needle = search.strip().lower()
        out = [r for r in out if needle in r.customer_name.lower()]
    out.sort(key=lambda r: r.created_at, reverse=True)
    return out


def discount_label(record: PaymentRecord) -> Optional[str]:
    if record.discount is None or record.payment_method != CASH:
        return None
    if record.discount.kind == DISCOUNT_PERCENTAGE:
        return f"Cash Discount ({record.discount.amount:g}%)"
    return "Cash Discount"


def receipt_summary(record: PaymentRecord, records: Iterable[PaymentRecord]) -> Dict[str, Any]:
    """Everything a receipt shows, as plain data."""
    numbers = ticket_numbers(list(records) + [record])
    number = numbers[record.id]
    totals = totals_for(record, amount_tendered=record.amount_tendered)
    info = record.delivery_info if record.sales_channel == DELIVERY else None
    return {
        'ticket': ticket_label(number),
        'order_number': number,
        'customer': record.customer_name,
        'created_at': record.created_at,
        'cashier': record.cashier_full_name or record.cashier,
        'payment_method': PAYMENT_METHODS.get(record.payment_method, record.payment_method or '-'),
        'status': record.payment_status,
        'lines': [
            {'name': item.name, 'quantity': item.quantity, 'unit_price': item.unit_price,
             'line_total': item.line_total}
            for item in record.line_items
        ],
        'subtotal': totals.subtotal,
        'delivery_fee': record.delivery_fee,
        'discount_label': discount_label(record),
        'discount_amount': totals.discount_amount,
        'total': record.price,
        'amount_tendered': record.amount_tendered,
        'change': None if record.change_given is None else max(0.0, record.change_given),
        'delivery': info.to_document() if info else None,
    }


def sale_from_input(data: SaleInput) -> PaymentRecord:
    if isinstance(data, PaymentRecord):
        return data
    doc = dict(data)
    doc.setdefault('schemaVersion', SCHEMA_VERSION)
    return PaymentRecord.from_document(doc)


class PaymentLedger:

    def __init__(self, engine, collection: Optional[str] = None):
        self.engine = engine
        self.collection = collection or pos_settings.PAYMENTS_COLLECTION

    # ---------- reads ----------
    async def current_records(self) -> List[PaymentRecord]:
        docs = await self.engine.current_records(self.collection)
        return [PaymentRecord.from_document(d) for d in docs if not d.get('deleted')]

    async def get_record(self, record_id: str) -> PaymentRecord:
        doc = await self.engine.get_record(self.collection, record_id)
        if doc is None or doc.get('deleted'):
            raise RecordNotFound(f"no payment record {record_id}")
        return PaymentRecord.from_document(doc)

    async def order_number(self, record_id: str) -> int:
        resolved = self.engine.resolve_id(self.collection, record_id)
        numbers = ticket_numbers(await self.current_records())
        if resolved not in numbers:
            raise RecordNotFound(f"no payment record {record_id}")
        return numbers[resolved]

    # ---------- writes ----------
    async def _write(self, action: str, record: PaymentRecord) -> PaymentRecord:
        doc = record.to_document()
        if action == CREATE:
            doc.pop('id', None)
            stored = await self.engine.write(CREATE, self.collection, doc)
        else:
            stored = await self.engine.write(UPDATE, self.collection, doc, record_id=record.id)
        return PaymentRecord.from_document(stored)

    async def create_sale(self, data: SaleInput, payment_method: Optional[str] = None,
                          amount_tendered: Optional[float] = None) -> PaymentRecord:
        """Ring up a sale, unpaid unless a payment method is given."""
        record = sale_from_input(data)
        record.id = None
        if not record.created_at:
            record.created_at = now_millis()
        method = payment_method or (record.payment_method if record.payment_status == PAID else None)
        if record.payment_status == VOIDED:
            raise InvalidTransition(UNPAID, VOIDED, "a new sale cannot start voided")
        validate_sale(record)
        if method:
            tendered = amount_tendered if amount_tendered is not None else record.amount_tendered
            settle(record, method, tendered)
        else:
            record.payment_status = UNPAID
            record.payment_method = None
            record.amount_tendered = None
            record.change_given = None
            record.price = totals_for(record).final_total
        saved = await self._write(CREATE, record)
        logger.info("Created sale %s (%s, %.2f)", saved.id, saved.payment_status, saved.price)
        return saved

    async def update_sale(self, record_id: str, changes: Dict[str, Any]) -> PaymentRecord:
        async with self.engine.record_lock(self.collection, record_id):
            current = await self.get_record(record_id)
            if current.payment_status != UNPAID:
                raise InvalidTransition(current.payment_status, current.payment_status,
                                        "only unpaid sales can be edited")
            if changes.get('paymentStatus', UNPAID) != UNPAID:
                raise InvalidTransition(UNPAID, changes['paymentStatus'],
                                        "use record_payment or void_sale to change status")
            doc = merge_documents(current.to_document(), changes)
            doc['id'] = current.id
            doc['schemaVersion'] = SCHEMA_VERSION
            record = PaymentRecord.from_document(doc)
            validate_sale(record)
            record.price = totals_for(record).final_total
            saved = await self._write(UPDATE, record)
        logger.info("Updated sale %s (%.2f)", saved.id, saved.price)
        return saved

    async def record_payment(self, record_id: str, payment_method: str,
                             amount_tendered: Optional[float] = None,
                             discount: Optional[Discount] = None) -> PaymentRecord:
        async with self.engine.record_lock(self.collection, record_id):
            record = await self.get_record(record_id)
            check_transition(record.payment_status, PAID)
            if discount is not None:
                record.discount = discount
            settle(record, payment_method, amount_tendered)
            saved = await self._write(UPDATE, record)
        logger.info("Recorded %s payment on %s (%.2f)", payment_method, saved.id, saved.price)
        return saved

    async def void_sale(self, record_id: str, voided_by: Optional[str]) -> PaymentRecord:
        async with self.engine.record_lock(self.collection, record_id):
            record = await self.get_record(record_id)
            check_transition(record.payment_status, VOIDED)
            if record.is_local:
                raise InvalidTransition(record.payment_status, VOIDED, "sale has not synced yet")
            actor = (voided_by or '').strip()
            if not actor:
                raise ValidationError("voiding a sale requires the acting user")
            record.payment_status = VOIDED
            record.voided_by = actor
            record.voided_at = now_millis()
            saved = await self._write(UPDATE, record)
        logger.info("Voided sale %s by %s", saved.id, actor)
        return saved

    async def submit(self, action: str, data: SaleInput) -> PaymentRecord:
        """Single entry point for the rendering layer: create, update or void."""
        if action not in SUBMIT_ACTIONS:
            raise ValidationError(f"unsupported action: {action}")
        record = sale_from_input(data)
        if action == CREATE:
            return await self.create_sale(record)
        if not record.id:
            raise ValidationError(f"{action} requires a record id")
        if action == VOID:
            return await self.void_sale(record.id, record.voided_by)
        if record.payment_status == PAID:
            current = await self.get_record(record.id)
            if current.payment_status == UNPAID:
                return await self.record_payment(record.id, record.payment_method,
                                                 record.amount_tendered, record.discount)
        doc = record.to_document() if isinstance(data, PaymentRecord) else dict(data)
        doc.pop('id', None)
        return await self.update_sale(record.id, doc)
