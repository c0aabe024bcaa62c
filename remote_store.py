"""Remote canonical store over a PostgREST-style HTTP API.

Inserts use ``on_conflict=id`` with ``resolution=ignore-duplicates`` so a
replayed create is a no-op. Relative stock updates go to an ``adjust_field``
RPC evaluated in the database; when the RPC is not deployed the backend falls
back to compare-and-set and re-reads on a stale write.
"""
import logging
from typing import Any, Dict, List, Optional

import requests

import settings
from backends import (
    Backend,
    Order,
    Record,
    RemoteRejected,
    RemoteUnavailable,
    StaleWriteError,
    check_collection,
)

logger = logging.getLogger(__name__)


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('message') or j.get('details') or resp.text
    except (ValueError, AttributeError):
        return resp.text


def _filter_value(value: Any) -> str:
    if value is None:
        return 'is.null'
    if isinstance(value, bool):
        return 'eq.true' if value else 'eq.false'
    if isinstance(value, (list, tuple, set)):
        return 'in.(' + ','.join(str(v) for v in value) + ')'
    return f'eq.{value}'


class RestBackend(Backend):
    name = 'remote'

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, adjust_rpc: Optional[str] = None,
                 rest_path: str = '/rest/v1', session: Optional[requests.Session] = None,
                 cas_retries: int = 3):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip('/') + rest_path
        self.api_key = api_key
        self.timeout = timeout or settings.REMOTE_TIMEOUT
        self.adjust_rpc = adjust_rpc or settings.REMOTE_ADJUST_RPC
        self.session = session or requests.Session()
        self.cas_retries = max(1, cas_retries)
        self._rpc_missing = False

    def close(self):
        self.session.close()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f'Bearer {self.api_key}'
        if prefer:
            headers['Prefer'] = prefer
        return headers

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 body: Any = None, prefer: Optional[str] = None,
                 timeout: Optional[float] = None) -> requests.Response:
        url = f"{self.base_url}/{path}"
        try:
            resp = self.session.request(method, url, params=params, json=body,
                                        headers=self._headers(prefer),
                                        timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 500:
            raise RemoteUnavailable(
                f"{method} {path} returned HTTP {resp.status_code}: {_error_message_from_response(resp)}"
            )
        if resp.status_code >= 400:
            raise RemoteRejected(resp.status_code, _error_message_from_response(resp))
        return resp

    @staticmethod
    def _rows(resp: requests.Response) -> List[Record]:
        if not resp.content:
            return []
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"Bad JSON from remote store: {resp.text[:200]}") from exc
        if isinstance(data, list):
            return data
        return [data] if data else []

    def ping(self, timeout: Optional[float] = None) -> bool:
        try:
            resp = self.session.get(self.base_url + '/', headers=self._headers(),
                                    timeout=timeout or settings.REMOTE_PROBE_TIMEOUT)
        except requests.RequestException:
            return False
        return resp.status_code < 500

    def insert_if_absent(self, collection: str, record: Record) -> bool:
        check_collection(collection)
        if not record.get('id'):
            raise ValueError(f"{collection} record needs a client-generated id")
        resp = self._request('POST', collection, params={'on_conflict': 'id'}, body=record,
                             prefer='resolution=ignore-duplicates,return=representation')
        return len(self._rows(resp)) > 0

    def update(self, collection: str, record_id: str, fields: Record,
               match: Optional[Record] = None) -> bool:
        check_collection(collection)
        fields = {k: v for k, v in fields.items() if k != 'id'}
        if not fields:
            return False
        params = {'id': _filter_value(record_id)}
        for key, value in (match or {}).items():
            params[key] = _filter_value(value)
        resp = self._request('PATCH', collection, params=params, body=fields,
                             prefer='return=representation')
        return len(self._rows(resp)) == 1

    def adjust(self, collection: str, record_id: str, field: str, delta: float,
               clamp_at_zero: bool = False) -> bool:
        check_collection(collection)
        if not self._rpc_missing:
            try:
                resp = self._request('POST', f'rpc/{self.adjust_rpc}', body={
                    'p_table': collection,
                    'p_id': record_id,
                    'p_field': field,
                    'p_delta': delta,
                    'p_clamp': clamp_at_zero,
                })
            except RemoteRejected as exc:
                if exc.status != 404:
                    raise
                self._rpc_missing = True
                logger.warning("Remote RPC %s missing; using compare-and-set for stock updates",
                               self.adjust_rpc)
            else:
                return bool(resp.json()) if resp.content else False
        return self._adjust_cas(collection, record_id, field, delta, clamp_at_zero)

    def _adjust_cas(self, collection: str, record_id: str, field: str, delta: float,
                    clamp_at_zero: bool) -> bool:
        for attempt in range(1, self.cas_retries + 1):
            row = self.get(collection, record_id)
            if row is None:
                return False
            current = row.get(field)
            new_value = float(current or 0) + delta
            if new_value < 0:
                if not clamp_at_zero:
                    return False
                new_value = 0.0
            if self.update(collection, record_id, {field: new_value}, match={field: current}):
                return True
            logger.info("Stale write on %s/%s.%s (attempt %d); re-reading",
                        collection, record_id, field, attempt)
        raise StaleWriteError(
            f"{collection}/{record_id}.{field} changed concurrently {self.cas_retries} times"
        )

    def prune_ledger(self, before: str) -> int:
        resp = self._request('DELETE', 'applied_mutations',
                             params={'applied_at': f'lt.{before}', 'select': 'id'},
                             prefer='return=representation')
        return len(self._rows(resp))

    def query(self, collection: str, filters: Optional[Record] = None,
              order: Optional[Order] = None, limit: Optional[int] = None) -> List[Record]:
        check_collection(collection)
        params: Dict[str, Any] = {'select': '*'}
        for key, value in (filters or {}).items():
            params[key] = _filter_value(value)
        if order:
            params['order'] = ','.join(f"{col}.{(direction or 'asc').lower()}" for col, direction in order)
        if limit:
            params['limit'] = int(limit)
        return self._rows(self._request('GET', collection, params=params))


class HttpProbe:
    """Connectivity probe: a short-timeout ping of the remote store."""

    def __init__(self, backend: RestBackend, timeout: Optional[float] = None):
        self.backend = backend
        self.timeout = timeout or settings.REMOTE_PROBE_TIMEOUT

    def __call__(self) -> bool:
        return self.backend.ping(self.timeout)


def build_remote(base_url: Optional[str] = None, api_key: Optional[str] = None) -> Optional[RestBackend]:
    """RestBackend from settings, or None when no remote is configured."""
    url = base_url or settings.REMOTE_BASE_URL
    if not url:
        return None
    return RestBackend(url, api_key=api_key or settings.REMOTE_API_KEY)
