"""
Remote document store clients.

The sync engine needs three calls: list a collection, create a document and
patch a document. `RestDocumentStore` speaks a Frappe-style REST resource API
(`/api/resource/<collection>`); `InMemoryDocumentStore` keeps everything in a
dict and is used when no remote is configured and in tests.

Creates carry a `clientRef` idempotency key. Replaying a create whose
`clientRef` already exists returns the existing id instead of a duplicate.
"""
import abc
import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

import pos_settings
from pos_errors import RemoteRejection, TransientConnectivityError

logger = logging.getLogger(__name__)

PAGE_LIMIT = 500


class RemoteDocumentStore(abc.ABC):

    @abc.abstractmethod
    async def list_all(self, collection: str) -> List[Dict[str, Any]]:
        """Return every document in the collection, each with an 'id'."""

    @abc.abstractmethod
    async def create(self, collection: str, payload: Dict[str, Any]) -> str:
        """Create a document and return the id the store assigned."""

    @abc.abstractmethod
    async def update(self, collection: str, record_id: str, partial: Dict[str, Any]) -> None:
        """Apply a partial update to an existing document."""


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('message') or j.get('exception') or resp.text
    except ValueError:
        return resp.text


class RestDocumentStore(RemoteDocumentStore):
    """Blocking requests client; each call runs in a worker thread."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout if timeout is not None else pos_settings.REMOTE_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.api_key and self.api_secret:
            headers['Authorization'] = f'token {self.api_key}:{self.api_secret}'
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key
        return headers

    def _resource_url(self, collection: str, record_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/api/resource/{quote(collection, safe='')}"
        if record_id is not None:
            url += '/' + quote(str(record_id), safe='')
        return url

    def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                 payload: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method, url,
                params=params,
                json=payload,
                headers=self._headers(idempotency_key),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientConnectivityError(f"{method} {url} failed: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientConnectivityError(
                f"{method} {url} returned {resp.status_code}: {_error_message_from_response(resp)[:200]}"
            )
        if resp.status_code >= 400:
            raise RemoteRejection(_error_message_from_response(resp), status_code=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteRejection(f"non-JSON response from {url}", status_code=resp.status_code) from exc

    @staticmethod
    def _with_id(doc: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(doc)
        out['id'] = doc.get('name') or doc.get('id')
        out.pop('name', None)
        return out

    def list_all_blocking(self, collection: str) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        start = 0
        while True:
            body = self._request('GET', self._resource_url(collection), params={
                'fields': json.dumps(['*']),
                'limit_start': start,
                'limit_page_length': PAGE_LIMIT,
                'order_by': 'creation asc',
            })
            page = body.get('data') or []
            records.extend(self._with_id(doc) for doc in page)
            if len(page) < PAGE_LIMIT:
                return records
            start += PAGE_LIMIT

    def find_by_client_ref(self, collection: str, client_ref: str) -> Optional[str]:
        body = self._request('GET', self._resource_url(collection), params={
            'fields': json.dumps(['name']),
            'filters': json.dumps([['clientRef', '=', client_ref]]),
            'limit_page_length': 1,
        })
        rows = body.get('data') or []
        return rows[0].get('name') if rows else None

    def create_blocking(self, collection: str, payload: Dict[str, Any]) -> str:
        client_ref = payload.get('clientRef')
        if client_ref:
            existing = self.find_by_client_ref(collection, client_ref)
            if existing:
                logger.info("Remote %s already holds clientRef %s as %s", collection, client_ref, existing)
                return existing
        body = {k: v for k, v in payload.items() if k != 'id'}
        resp = self._request('POST', self._resource_url(collection), payload=body, idempotency_key=client_ref)
        data = resp.get('data') or resp
        name = data.get('name') or data.get('id')
        if not name:
            raise RemoteRejection(f"create in {collection} returned no id")
        return str(name)

    def update_blocking(self, collection: str, record_id: str, partial: Dict[str, Any]) -> None:
        body = {k: v for k, v in partial.items() if k != 'id'}
        self._request('PUT', self._resource_url(collection, record_id), payload=body)

    async def list_all(self, collection: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.list_all_blocking, collection)

    async def create(self, collection: str, payload: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self.create_blocking, collection, payload)

    async def update(self, collection: str, record_id: str, partial: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.update_blocking, collection, record_id, partial)


class InMemoryDocumentStore(RemoteDocumentStore):
    """Process-local store with the same contract, including clientRef dedup."""

    def __init__(self, id_prefix: str = 'DOC-'):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._counter = itertools.count(1)
        self.id_prefix = id_prefix
        self.reachable = True

    def _check(self):
        if not self.reachable:
            raise TransientConnectivityError("in-memory store marked unreachable")

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    async def list_all(self, collection: str) -> List[Dict[str, Any]]:
        self._check()
        return [dict(doc) for doc in self._docs(collection).values()]

    async def create(self, collection: str, payload: Dict[str, Any]) -> str:
        self._check()
        docs = self._docs(collection)
        client_ref = payload.get('clientRef')
        if client_ref:
            for record_id, doc in docs.items():
                if doc.get('clientRef') == client_ref:
                    return record_id
        record_id = f"{self.id_prefix}{next(self._counter):05d}"
        doc = {k: v for k, v in payload.items() if k != 'id'}
        doc['id'] = record_id
        docs[record_id] = doc
        return record_id

    async def update(self, collection: str, record_id: str, partial: Dict[str, Any]) -> None:
        self._check()
        docs = self._docs(collection)
        if record_id not in docs:
            raise RemoteRejection(f"{collection}/{record_id} not found", status_code=404)
        doc = dict(docs[record_id])
        doc.update({k: v for k, v in partial.items() if k != 'id'})
        docs[record_id] = doc


def build_remote_store() -> RemoteDocumentStore:
    if pos_settings.REMOTE_BASE:
        return RestDocumentStore(
            pos_settings.REMOTE_BASE,
            api_key=pos_settings.REMOTE_API_KEY,
            api_secret=pos_settings.REMOTE_API_SECRET,
        )
    logger.warning("REMOTE_BASE not set; using an in-memory remote store")
    return InMemoryDocumentStore()
