"""
Payment record schema: typed records, local ids and the document boundary.

Documents are what the cache, outbox and remote store carry (camelCase JSON
objects). `PaymentRecord.from_document` is the only place that understands
older document shapes; everything past it works on the current schema.

Legacy (schema 1) documents look like:

    {'paid': True, 'voided': False,
     'products': [{'productId': 'P1', 'productName': 'Bilao', 'price': 50, 'quantity': 2}],
     'salesType': 'delivery',
     'delivery': {'fbName': 'Ana', 'contactNumber': '0917', 'address': '...', 'time': '13:30'},
     'deliveryCharge': 50, 'deliveryLandmark': '...', 'deliveryRemarks': '...',
     'discount': 10, 'discountType': 'percentage', 'change': 20, ...}

`delivery` was sometimes stored as a JSON string. Very old records carry a
single `serviceId`/`serviceName`/`quantity` instead of `products`.
"""
import json
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = 2
LOCAL_ID_PREFIX = 'offline-'

UNPAID = 'unpaid'
PAID = 'paid'
VOIDED = 'voided'
PAYMENT_STATUSES = (UNPAID, PAID, VOIDED)

IN_STORE = 'in_store'
DELIVERY = 'delivery'
SALES_CHANNELS = (IN_STORE, DELIVERY)

CASH = 'cash'
PAYMENT_METHODS = {
    'cash': 'Cash',
    'gcash': 'GCash',
    'card': 'Card',
    'maya': 'Maya',
}

DISCOUNT_FIXED = 'fixed'
DISCOUNT_PERCENTAGE = 'percentage'
DISCOUNT_KINDS = (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE)

DEFAULT_CUSTOMER = 'N/A'

# Fields consumed by the current schema; anything else rides along in `extra`.
_CURRENT_FIELDS = {
    'id', 'customerName', 'createdAt', 'lineItems', 'salesChannel', 'deliveryInfo',
    'discount', 'paymentStatus', 'paymentMethod', 'amountTendered', 'changeGiven',
    'price', 'voidedBy', 'voidedAt', 'cashier', 'cashierFullName', 'clientRef',
    'schemaVersion',
}
_LEGACY_FIELDS = {
    'paid', 'voided', 'products', 'salesType', 'delivery', 'deliveryCharge',
    'deliveryLandmark', 'deliveryRemarks', 'discountType', 'change',
    'serviceId', 'serviceName', 'quantity', 'deleted',
}


def now_millis() -> int:
    return int(time.time() * 1000)


def new_local_id(now: Optional[int] = None) -> str:
    """Return an id that marks a record as created offline and not yet synced."""
    stamp = now if now is not None else now_millis()
    return f"{LOCAL_ID_PREFIX}{stamp}-{random.randint(0, 99999)}"


def is_local_id(record_id: Any) -> bool:
    return isinstance(record_id, str) and record_id.startswith(LOCAL_ID_PREFIX)


def merge_documents(base: Optional[Dict[str, Any]], patch: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Last-writer-wins merge of two documents.

    Keys present in `patch` overwrite `base`, including an explicit None which
    clears the field. Keys absent from `patch` keep their `base` value. Nested
    values (lineItems, deliveryInfo, discount) are replaced whole.
    """
    merged = dict(base or {})
    for key, value in (patch or {}).items():
        merged[key] = value
    return merged


def _as_float(value: Any, default: float = 0.0) -> float:
    if value in (None, '', False):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_optional_float(value: Any) -> Optional[float]:
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_millis(value: Any) -> int:
    if value in (None, ''):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class LineItem:
    item_id: str
    name: str
    unit_price: float
    quantity: float

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    def to_document(self) -> Dict[str, Any]:
        return {
            'itemId': self.item_id,
            'name': self.name,
            'unitPrice': self.unit_price,
            'quantity': self.quantity,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'LineItem':
        item_id = doc.get('itemId') or doc.get('productId') or ''
        name = doc.get('name') or doc.get('productName') or item_id
        price = doc.get('unitPrice') if 'unitPrice' in doc else doc.get('price')
        return cls(
            item_id=str(item_id),
            name=str(name),
            unit_price=_as_float(price),
            quantity=_as_float(doc.get('quantity'), 1.0),
        )


@dataclass
class DeliveryInfo:
    contact_name: Optional[str] = None
    contact_number: Optional[str] = None
    address: Optional[str] = None
    time: Optional[str] = None
    date: Optional[str] = None
    fee: float = 0.0
    landmark: Optional[str] = None
    remarks: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'contactName': self.contact_name,
            'contactNumber': self.contact_number,
            'address': self.address,
            'time': self.time,
            'date': self.date,
            'fee': self.fee,
            'landmark': self.landmark,
            'remarks': self.remarks,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'DeliveryInfo':
        return cls(
            contact_name=_clean_text(doc.get('contactName')),
            contact_number=_clean_text(doc.get('contactNumber')),
            address=_clean_text(doc.get('address')),
            time=_clean_text(doc.get('time')),
            date=_clean_text(doc.get('date')),
            fee=_as_float(doc.get('fee')),
            landmark=_clean_text(doc.get('landmark')),
            remarks=_clean_text(doc.get('remarks')),
        )

    @classmethod
    def from_legacy(cls, doc: Dict[str, Any]) -> 'DeliveryInfo':
        raw = doc.get('delivery')
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                raw = {'address': raw}
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            contact_name=_clean_text(raw.get('fbName')),
            contact_number=_clean_text(raw.get('contactNumber')),
            address=_clean_text(raw.get('address')),
            time=_clean_text(raw.get('time')),
            date=_clean_text(raw.get('deliveryDate')),
            fee=_as_float(doc.get('deliveryCharge')),
            landmark=_clean_text(doc.get('deliveryLandmark')),
            remarks=_clean_text(doc.get('deliveryRemarks')),
        )


@dataclass
class Discount:
    amount: float
    kind: str = DISCOUNT_FIXED

    def to_document(self) -> Dict[str, Any]:
        return {'amount': self.amount, 'kind': self.kind}

    @classmethod
    def from_value(cls, value: Any, legacy_kind: Any = None) -> Optional['Discount']:
        if isinstance(value, dict):
            amount = _as_float(value.get('amount'))
            kind = value.get('kind') or DISCOUNT_FIXED
        else:
            amount = _as_float(value)
            kind = legacy_kind or DISCOUNT_FIXED
        if amount <= 0:
            return None
        if kind not in DISCOUNT_KINDS:
            kind = DISCOUNT_FIXED
        return cls(amount=amount, kind=kind)


@dataclass
class PaymentRecord:
    id: Optional[str] = None
    customer_name: str = DEFAULT_CUSTOMER
    created_at: int = 0
    line_items: List[LineItem] = field(default_factory=list)
    sales_channel: str = IN_STORE
    delivery_info: Optional[DeliveryInfo] = None
    discount: Optional[Discount] = None
    payment_status: str = UNPAID
    payment_method: Optional[str] = None
    amount_tendered: Optional[float] = None
    change_given: Optional[float] = None
    price: float = 0.0
    voided_by: Optional[str] = None
    voided_at: Optional[int] = None
    cashier: Optional[str] = None
    cashier_full_name: Optional[str] = None
    client_ref: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        return is_local_id(self.id)

    @property
    def delivery_fee(self) -> float:
        if self.sales_channel != DELIVERY or not self.delivery_info:
            return 0.0
        return self.delivery_info.fee

    def to_document(self) -> Dict[str, Any]:
        doc = dict(self.extra)
        doc.update({
            'id': self.id,
            'customerName': self.customer_name,
            'createdAt': self.created_at,
            'lineItems': [item.to_document() for item in self.line_items],
            'salesChannel': self.sales_channel,
            'deliveryInfo': self.delivery_info.to_document() if self.delivery_info else None,
            'discount': self.discount.to_document() if self.discount else None,
            'paymentStatus': self.payment_status,
            'paymentMethod': self.payment_method,
            'amountTendered': self.amount_tendered,
            'changeGiven': self.change_given,
            'price': self.price,
            'voidedBy': self.voided_by,
            'voidedAt': self.voided_at,
            'cashier': self.cashier,
            'cashierFullName': self.cashier_full_name,
            'clientRef': self.client_ref,
            'schemaVersion': SCHEMA_VERSION,
        })
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'PaymentRecord':
        version = _as_millis(doc.get('schemaVersion')) or 1
        if version >= SCHEMA_VERSION:
            return cls._from_current(doc)
        return cls._from_legacy(doc)

    @classmethod
    def _from_current(cls, doc: Dict[str, Any]) -> 'PaymentRecord':
        channel = doc.get('salesChannel') if doc.get('salesChannel') in SALES_CHANNELS else IN_STORE
        delivery = doc.get('deliveryInfo')
        status = doc.get('paymentStatus') if doc.get('paymentStatus') in PAYMENT_STATUSES else UNPAID
        return cls(
            id=doc.get('id'),
            customer_name=_clean_text(doc.get('customerName')) or DEFAULT_CUSTOMER,
            created_at=_as_millis(doc.get('createdAt')),
            line_items=[LineItem.from_document(item) for item in doc.get('lineItems') or []],
            sales_channel=channel,
            delivery_info=DeliveryInfo.from_document(delivery) if channel == DELIVERY and isinstance(delivery, dict) else None,
            discount=Discount.from_value(doc.get('discount')),
            payment_status=status,
            payment_method=doc.get('paymentMethod'),
            amount_tendered=_as_optional_float(doc.get('amountTendered')),
            change_given=_as_optional_float(doc.get('changeGiven')),
            price=_as_float(doc.get('price')),
            voided_by=doc.get('voidedBy'),
            voided_at=_as_millis(doc.get('voidedAt')) or None,
            cashier=doc.get('cashier'),
            cashier_full_name=doc.get('cashierFullName'),
            client_ref=doc.get('clientRef'),
            extra={k: v for k, v in doc.items() if k not in _CURRENT_FIELDS},
        )

    @classmethod
    def _from_legacy(cls, doc: Dict[str, Any]) -> 'PaymentRecord':
        if doc.get('voided'):
            status = VOIDED
        elif doc.get('paid'):
            status = PAID
        else:
            status = UNPAID

        products = doc.get('products')
        if isinstance(products, list) and products:
            items = [LineItem.from_document(p) for p in products if isinstance(p, dict)]
        elif doc.get('serviceId'):
            qty = _as_float(doc.get('quantity'), 1.0) or 1.0
            items = [LineItem(
                item_id=str(doc.get('serviceId')),
                name=str(doc.get('serviceName') or doc.get('serviceId')),
                unit_price=_as_float(doc.get('price')) / qty,
                quantity=qty,
            )]
        else:
            items = []

        channel = DELIVERY if doc.get('salesType') == DELIVERY else IN_STORE
        return cls(
            id=doc.get('id'),
            customer_name=_clean_text(doc.get('customerName')) or DEFAULT_CUSTOMER,
            created_at=_as_millis(doc.get('createdAt')),
            line_items=items,
            sales_channel=channel,
            delivery_info=DeliveryInfo.from_legacy(doc) if channel == DELIVERY else None,
            discount=Discount.from_value(doc.get('discount'), doc.get('discountType')),
            payment_status=status,
            payment_method=doc.get('paymentMethod'),
            amount_tendered=_as_optional_float(doc.get('amountTendered')),
            change_given=_as_optional_float(doc.get('change')),
            price=_as_float(doc.get('price')),
            voided_by=doc.get('voidedBy'),
            voided_at=_as_millis(doc.get('voidedAt')) or None,
            cashier=doc.get('cashier'),
            cashier_full_name=doc.get('cashierFullName'),
            client_ref=doc.get('clientRef'),
            extra={k: v for k, v in doc.items() if k not in _CURRENT_FIELDS and k not in _LEGACY_FIELDS},
        )


def upgrade_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite any supported document shape into the current schema."""
    return PaymentRecord.from_document(doc).to_document()
