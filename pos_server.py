import asyncio
import datetime as dt
import logging
import threading
from functools import wraps
from typing import Any, Dict, Iterable, Optional

from flask import Flask, jsonify, request

import pos_settings
from connectivity import ConnectivityMonitor, build_signal
from ledger import (
    PaymentLedger,
    daily_summary,
    filter_records,
    receipt_summary,
    ticket_label,
    ticket_numbers,
    void_report,
)
from offline_cache import LocalCache, connect, init_db
from outbox import Outbox
from payment_records import Discount, PaymentRecord
from pos_errors import (
    LedgerError,
    LocalStorageFailure,
    RecordNotFound,
    RemoteRejection,
    TransientConnectivityError,
)
from remote_store import RemoteDocumentStore, build_remote_store
from sync_engine import SyncEngine

app = Flask(__name__)

app.logger.setLevel(pos_settings.LOG_LEVEL)
logging.getLogger('werkzeug').setLevel(pos_settings.LOG_LEVEL)

CALL_TIMEOUT = pos_settings.REMOTE_TIMEOUT * max(1, pos_settings.SYNC_MAX_ATTEMPTS) + 10


class SyncRuntime:
    """Owns the asyncio loop the sync engine lives on.

    Flask handlers run in request threads; every engine or ledger call is
    handed to the loop thread with run_coroutine_threadsafe so cache and
    outbox access stays on one thread.
    """

    def __init__(self, engine: SyncEngine, ledger: PaymentLedger, monitor: ConnectivityMonitor):
        self.engine = engine
        self.ledger = ledger
        self.monitor = monitor
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run_loop, name='sync-loop', daemon=True)
        self._watch_task: Optional[asyncio.Task] = None

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self, watch: bool = True):
        self.thread.start()
        self.call(self._startup(watch))
        snapshot = self.status()
        app.logger.info("Sync loop started (online=%s, pending=%d)", snapshot["online"], snapshot["pending"])

    async def _startup(self, watch: bool):
        self.engine.start()
        if watch:
            self._watch_task = asyncio.get_running_loop().create_task(self.monitor.watch())

    def call(self, coro, timeout: Optional[float] = None):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout if timeout is not None else CALL_TIMEOUT)

    async def _poll(self) -> bool:
        return self.monitor.poll()

    def poll_connectivity(self) -> bool:
        return self.call(self._poll())

    async def _drain(self):
        self.engine.request_drain()
        await self.engine.wait_idle()
        return self.engine.last_report

    def drain(self):
        return self.call(self._drain())

    async def _snapshot(self) -> Dict[str, Any]:
        return self.engine.status_snapshot()

    def status(self) -> Dict[str, Any]:
        return self.call(self._snapshot())

    def stop(self):
        self.monitor.stop()
        if self._watch_task:
            self.loop.call_soon_threadsafe(self._watch_task.cancel)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)


def build_runtime(db_path: Optional[str] = None, remote: Optional[RemoteDocumentStore] = None,
                  monitor: Optional[ConnectivityMonitor] = None) -> SyncRuntime:
    conn = connect(db_path)
    init_db(conn)
    engine = SyncEngine(
        LocalCache(conn),
        Outbox(conn),
        remote or build_remote_store(),
        monitor or ConnectivityMonitor(build_signal()),
    )
    return SyncRuntime(engine, PaymentLedger(engine), engine.monitor)


_RUNTIME: Optional[SyncRuntime] = None
_RUNTIME_LOCK = threading.Lock()


def install_runtime(runtime: Optional[SyncRuntime]):
    global _RUNTIME
    with _RUNTIME_LOCK:
        _RUNTIME = runtime


def get_runtime() -> SyncRuntime:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = build_runtime()
            _RUNTIME.start()
        return _RUNTIME


def _error(message: str, code: int, **extra):
    body = {'status': 'error', 'message': message}
    body.update(extra)
    return jsonify(body), code


def api_errors(fn):
    """Map ledger and sync failures onto HTTP responses."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except RecordNotFound as exc:
            return _error(str(exc), 404)
        except LedgerError as exc:
            return _error(str(exc), 400, kind=type(exc).__name__)
        except RemoteRejection as exc:
            app.logger.warning("Remote store rejected request: %s", exc)
            return _error(str(exc), 422, remote_status=exc.status_code)
        except TransientConnectivityError as exc:
            return _error(str(exc), 503)
        except LocalStorageFailure as exc:
            app.logger.exception("Local storage failure")
            return _error(f"Local storage failure: {exc}", 500)
    return wrapper


def _parse_day(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise LedgerError(f"invalid date {value!r}; expected YYYY-MM-DD") from exc


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise LedgerError('Invalid JSON payload')
    return data


def _record_json(record: PaymentRecord, numbers: Dict[str, int]) -> Dict[str, Any]:
    doc = record.to_document()
    number = numbers.get(record.id)
    doc['orderNumber'] = number
    doc['ticket'] = ticket_label(number) if number else None
    doc['pendingSync'] = record.is_local
    return doc


def _records_json(records: Iterable[PaymentRecord], numbers: Dict[str, int]):
    return [_record_json(r, numbers) for r in records]


def _float_or_none(value: Any) -> Optional[float]:
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise LedgerError(f"invalid amount {value!r}") from exc


# Disable caching for API responses so tills never show stale ledgers
@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.route('/api/payments')
@api_errors
def api_list_payments():
    """List current payment records with their ticket numbers."""
    rt = get_runtime()
    records = rt.call(rt.ledger.current_records())
    numbers = ticket_numbers(records)
    day = _parse_day(request.args.get('date'))
    filtered = filter_records(
        records,
        customer=request.args.get('customer') or None,
        status=request.args.get('status') or None,
        date_from=day or _parse_day(request.args.get('date_from')),
        date_to=day or _parse_day(request.args.get('date_to')),
        search=request.args.get('search') or None,
    )
    return jsonify({
        'status': 'success',
        'online': rt.engine.is_online(),
        'payments': _records_json(filtered, numbers),
    })


@app.route('/api/payments', methods=['POST'])
@api_errors
def api_create_payment():
    """Ring up a sale; pass paymentMethod (and amountTendered for cash) to take payment now."""
    rt = get_runtime()
    data = _json_body()
    method = data.pop('paymentMethod', None) or None
    tendered = _float_or_none(data.pop('amountTendered', None))
    record = rt.call(rt.ledger.create_sale(data, payment_method=method, amount_tendered=tendered))
    message = 'Sale recorded (queued locally for sync)' if record.is_local else 'Sale recorded'
    return jsonify({'status': 'success', 'message': message, 'payment': record.to_document()}), 201


@app.route('/api/payments/<record_id>', methods=['PUT'])
@api_errors
def api_update_payment(record_id):
    rt = get_runtime()
    data = _json_body()
    data.pop('id', None)
    record = rt.call(rt.ledger.update_sale(record_id, data))
    return jsonify({'status': 'success', 'payment': record.to_document()})


@app.route('/api/payments/<record_id>/pay', methods=['POST'])
@api_errors
def api_pay_payment(record_id):
    rt = get_runtime()
    data = _json_body()
    method = data.get('paymentMethod')
    if not method:
        raise LedgerError('paymentMethod is required')
    discount = Discount.from_value(data['discount']) if data.get('discount') else None
    record = rt.call(rt.ledger.record_payment(
        record_id, method, _float_or_none(data.get('amountTendered')), discount,
    ))
    return jsonify({'status': 'success', 'payment': record.to_document()})


@app.route('/api/payments/<record_id>/void', methods=['POST'])
@api_errors
def api_void_payment(record_id):
    rt = get_runtime()
    data = request.get_json(silent=True) or {}
    record = rt.call(rt.ledger.void_sale(record_id, data.get('voidedBy')))
    return jsonify({'status': 'success', 'payment': record.to_document()})


@app.route('/api/payments/summary')
@api_errors
def api_daily_summary():
    rt = get_runtime()
    day = _parse_day(request.args.get('date')) or dt.date.today()
    records = rt.call(rt.ledger.current_records())
    return jsonify({'status': 'success', 'summary': daily_summary(records, day)})


@app.route('/api/payments/voided')
@api_errors
def api_void_report():
    rt = get_runtime()
    records = rt.call(rt.ledger.current_records())
    report = void_report(records, day=_parse_day(request.args.get('date')),
                         voided_by=request.args.get('voided_by') or None)
    numbers = ticket_numbers(records)
    report['records'] = _records_json(report['records'], numbers)
    return jsonify({'status': 'success', 'report': report})


@app.route('/api/payments/<record_id>/receipt')
@api_errors
def api_receipt(record_id):
    """Receipt data for one sale; rendering and printing happen on the till."""
    rt = get_runtime()
    record = rt.call(rt.ledger.get_record(record_id))
    records = rt.call(rt.ledger.current_records())
    return jsonify({'status': 'success', 'receipt': receipt_summary(record, records)})


@app.route('/api/sync/status')
@api_errors
def api_sync_status():
    rt = get_runtime()
    return jsonify({'status': 'success', 'sync': rt.status()})


@app.route('/api/sync/drain', methods=['POST'])
@api_errors
def api_sync_drain():
    rt = get_runtime()
    if not rt.engine.is_online():
        return _error('Remote store is offline; sales stay queued', 409, sync=rt.status())
    report = rt.drain()
    return jsonify({
        'status': 'success',
        'report': report.as_dict() if report else None,
        'sync': rt.status(),
    })
