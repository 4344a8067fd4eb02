"""HTTP client for the central CouchDB-compatible document database."""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import requests

from pos_errors import (
    AuthorizationError,
    ConflictError,
    ConnectivityError,
    NotFoundError,
    PosError,
    RemoteStoreError,
)

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('reason') or j.get('message') or j.get('error') or resp.text
    except ValueError:
        return resp.text


def _raise_for_response(resp: requests.Response, what: str):
    if resp.status_code < 400:
        return
    detail = (_error_message_from_response(resp) or '').strip()[:400]
    if resp.status_code in (401, 403):
        raise AuthorizationError(f"{what}: access denied ({resp.status_code})", detail=detail)
    if resp.status_code == 404:
        raise NotFoundError(f"{what}: not found", detail=detail)
    if resp.status_code == 409:
        raise ConflictError(f"{what}: conflict", detail=detail)
    raise RemoteStoreError(f"{what}: HTTP {resp.status_code}", status=resp.status_code, detail=detail)


def classify_sync_error(exc: BaseException) -> str:
    """Bucket a sync failure for logging: auth, not-found, policy, network or unknown."""
    if isinstance(exc, AuthorizationError):
        return 'auth'
    if isinstance(exc, NotFoundError):
        return 'not-found'
    if isinstance(exc, ConnectivityError):
        return 'network'
    if isinstance(exc, RemoteStoreError) and exc.status and 400 <= exc.status < 500:
        return 'policy'
    if isinstance(exc, requests.RequestException):
        return 'network'
    return 'unknown'


def _split_credentials(url: str):
    """Pull ``user:pass@`` out of the URL so it is never logged."""
    parts = urlsplit(url)
    if not parts.username:
        return url.rstrip('/'), None
    netloc = parts.hostname or ''
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    clean = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    return clean.rstrip('/'), (parts.username, parts.password or '')


class RemoteDocStore:
    """Talks to ``<server>/<db>`` over the CouchDB HTTP API."""

    def __init__(self, url: str, username: Optional[str] = None, password: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.url, auth = _split_credentials(url)
        if username:
            auth = (username, password or '')
        self.name = self.url
        self.timeout = timeout
        self.session = session or requests.Session()
        if auth:
            self.session.auth = auth
        self.session.headers.update({'Accept': 'application/json'})

    def close(self):
        self.session.close()

    def _request(self, method: str, path: str, what: str, timeout: Optional[float] = None, **kwargs) -> Any:
        url = self.url + path
        try:
            resp = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.Timeout as exc:
            raise ConnectivityError(f"{what}: timed out", detail=str(exc)) from exc
        except requests.RequestException as exc:
            raise ConnectivityError(f"{what}: remote unreachable", detail=str(exc)) from exc
        _raise_for_response(resp, what)
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteStoreError(f"{what}: bad JSON response", status=resp.status_code,
                                   detail=resp.text[:200]) from exc

    def info(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._request('GET', '', 'Remote info', timeout=timeout)

    def get(self, doc_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._request('GET', '/' + quote(doc_id, safe=''), f"Get {doc_id}", timeout=timeout)

    def put(self, doc: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        doc_id = doc.get('_id')
        if not doc_id:
            raise PosError("Document is missing _id")
        return self._request('PUT', '/' + quote(doc_id, safe=''), f"Put {doc_id}", timeout=timeout, json=doc)

    def find(self, selector: Dict[str, Any], limit: int = 1000, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        body = self._request('POST', '/_find', 'Find', timeout=timeout,
                             json={'selector': selector, 'limit': limit})
        return body.get('docs') or []

    def all_docs(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        body = self._request('GET', '/_all_docs', 'All docs', timeout=timeout,
                             params={'include_docs': 'true'})
        return [row['doc'] for row in body.get('rows') or [] if row.get('doc')]

    def changes(self, since: Any = 0, limit: Optional[int] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {'since': since if since not in (None, '') else 0,
                                  'include_docs': 'true', 'style': 'main_only'}
        if limit:
            params['limit'] = int(limit)
        body = self._request('GET', '/_changes', 'Changes feed', timeout=timeout, params=params)
        results = []
        for row in body.get('results') or []:
            revs = row.get('changes') or [{}]
            results.append({
                'seq': row.get('seq'),
                'id': row.get('id'),
                'rev': revs[0].get('rev'),
                'deleted': bool(row.get('deleted')),
                'doc': row.get('doc'),
            })
        return {'results': results, 'last_seq': body.get('last_seq', since)}

    def bulk_docs(self, docs: List[Dict[str, Any]], new_edits: bool = False,
                  timeout: Optional[float] = None) -> int:
        if not docs:
            return 0
        body = self._request('POST', '/_bulk_docs', 'Bulk docs', timeout=timeout,
                             json={'docs': docs, 'new_edits': bool(new_edits)})
        if isinstance(body, list):
            failed = [r for r in body if isinstance(r, dict) and r.get('error')]
            for r in failed:
                log.warning("Remote rejected %s: %s", r.get('id'), r.get('reason') or r.get('error'))
            return len(docs) - len(failed)
        return len(docs)
