"""
Supabase HTTP helpers for Spody Admin.

Thin wrappers over the PostgREST, Storage and GoTrue endpoints of a hosted
Supabase project. Every call goes through ``requests`` and raises
``SupabaseError`` on a non-2xx response.
"""

import logging
from typing import Dict, Any, Optional, List, Tuple, Iterable, Union

import requests

import config

# Configure logging
logger = logging.getLogger(__name__)

# Query parameters: a dict, or a list of pairs when a key repeats
Params = Union[Dict[str, str], List[Tuple[str, str]]]


class SupabaseError(Exception):
    """Error returned by (or while talking to) Supabase."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[str] = None,
                 hint: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'code': self.code,
            'details': self.details,
            'hint': self.hint,
        }


def _api_key() -> Optional[str]:
    return config.SUPABASE_SERVICE_ROLE_KEY or config.SUPABASE_ANON_KEY


def supabase_headers(access_token: Optional[str] = None, prefer: Optional[str] = None) -> Dict[str, str]:
    """Return headers for Supabase API requests."""
    key = _api_key()
    headers = {
        'apikey': key,
        'Authorization': f'Bearer {access_token or key}',
        'Content-Type': 'application/json'
    }
    if prefer:
        headers['Prefer'] = prefer
    return headers


def in_filter(values: Iterable[Any]) -> str:
    """Build a PostgREST ``in`` filter value."""
    return 'in.(' + ','.join(str(v) for v in values) + ')'


def _raise_for_response(response: requests.Response, context: str) -> None:
    if response.ok:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get('message') or body.get('msg') or body.get('error_description') \
        or body.get('error') or response.text[:200] or f'HTTP {response.status_code}'
    logger.error(f'Supabase {context} failed: {response.status_code} {message}')
    raise SupabaseError(
        str(message),
        code=body.get('code') or body.get('error_code'),
        details=body.get('details'),
        hint=body.get('hint'),
        status=response.status_code,
    )


def _request(method: str, url: str, context: str, **kwargs) -> requests.Response:
    if not config.SUPABASE_URL:
        raise SupabaseError('Supabase not configured')
    kwargs.setdefault('timeout', config.TIMEOUT)
    try:
        response = requests.request(method, url, **kwargs)
    except requests.exceptions.RequestException as e:
        logger.error(f'Supabase {context} request error: {str(e)}')
        raise SupabaseError(str(e)) from e
    _raise_for_response(response, context)
    return response


def _json(response: requests.Response) -> Any:
    if not response.content:
        return None
    return response.json()


def rest_url(table: str) -> str:
    return f"{config.SUPABASE_URL}/rest/v1/{table}"


# ============================================================================
# POSTGREST
# ============================================================================

def select(table: str, params: Optional[Params] = None,
           access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    """Fetch rows from a table."""
    response = _request('GET', rest_url(table), f'select {table}',
                        params=params or {'select': '*'},
                        headers=supabase_headers(access_token))
    return _json(response) or []


def select_with_count(table: str, params: Optional[Params] = None,
                      access_token: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    """Fetch rows plus the exact total count from the Content-Range header."""
    response = _request('GET', rest_url(table), f'select {table}',
                        params=params or {'select': '*'},
                        headers=supabase_headers(access_token, prefer='count=exact'))
    rows = _json(response) or []
    content_range = response.headers.get('Content-Range', '')
    total = content_range.rsplit('/', 1)[-1] if '/' in content_range else ''
    count = int(total) if total.isdigit() else len(rows)
    return rows, count


def select_single(table: str, params: Params,
                  access_token: Optional[str] = None) -> Dict[str, Any]:
    """Fetch exactly one row; raise when zero or several rows match."""
    headers = supabase_headers(access_token)
    headers['Accept'] = 'application/vnd.pgrst.object+json'
    response = _request('GET', rest_url(table), f'select single {table}',
                        params=params, headers=headers)
    row = _json(response)
    if not isinstance(row, dict):
        raise SupabaseError('JSON object requested, multiple (or no) rows returned', code='PGRST116')
    return row


def insert(table: str, rows: List[Dict[str, Any]],
           access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    response = _request('POST', rest_url(table), f'insert {table}',
                        json=rows,
                        headers=supabase_headers(access_token, prefer='return=representation'))
    return _json(response) or []


def upsert(table: str, rows: List[Dict[str, Any]],
           access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    response = _request('POST', rest_url(table), f'upsert {table}',
                        json=rows,
                        headers=supabase_headers(
                            access_token, prefer='resolution=merge-duplicates,return=representation'))
    return _json(response) or []


def update(table: str, filters: Dict[str, str], values: Dict[str, Any],
           access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    response = _request('PATCH', rest_url(table), f'update {table}',
                        params=filters, json=values,
                        headers=supabase_headers(access_token, prefer='return=representation'))
    return _json(response) or []


def delete(table: str, filters: Dict[str, str],
           access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    if not filters:
        raise SupabaseError('Refusing to delete without filters')
    response = _request('DELETE', rest_url(table), f'delete {table}',
                        params=filters,
                        headers=supabase_headers(access_token, prefer='return=representation'))
    return _json(response) or []


def rpc(function: str, args: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None) -> Any:
    """Call a stored procedure."""
    response = _request('POST', f"{config.SUPABASE_URL}/rest/v1/rpc/{function}", f'rpc {function}',
                        json=args or {}, headers=supabase_headers(access_token))
    return _json(response)


# ============================================================================
# STORAGE
# ============================================================================

def list_buckets() -> List[Dict[str, Any]]:
    response = _request('GET', f"{config.SUPABASE_URL}/storage/v1/bucket", 'list buckets',
                        headers=supabase_headers())
    return _json(response) or []


def upload_object(bucket: str, path: str, data: bytes, content_type: str,
                  upsert: bool = True, cache_control: str = '3600') -> Dict[str, Any]:
    """Upload a file to Supabase Storage. Returns ``{'path': ..., 'Key': ...}``."""
    headers = {
        'apikey': _api_key(),
        'Authorization': f'Bearer {_api_key()}',
        'Content-Type': content_type or 'application/octet-stream',
        'cache-control': f'max-age={cache_control}',
        'x-upsert': 'true' if upsert else 'false',
    }
    response = _request('POST', f"{config.SUPABASE_URL}/storage/v1/object/{bucket}/{path}",
                        f'upload {bucket}/{path}', data=data, headers=headers)
    result = _json(response) or {}
    result.setdefault('path', path)
    logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
    return result


def public_url(bucket: str, path: str) -> str:
    return f"{config.SUPABASE_URL}/storage/v1/object/public/{bucket}/{path}"


# ============================================================================
# AUTH (GoTrue)
# ============================================================================

def _auth_headers(access_token: Optional[str] = None) -> Dict[str, str]:
    key = config.SUPABASE_ANON_KEY or _api_key()
    return {
        'apikey': key,
        'Authorization': f'Bearer {access_token or key}',
        'Content-Type': 'application/json'
    }


def auth_sign_in(email: str, password: str) -> Dict[str, Any]:
    """Password sign-in. Returns the session payload (access_token, user, ...)."""
    response = _request('POST', f"{config.SUPABASE_URL}/auth/v1/token", 'sign in',
                        params={'grant_type': 'password'},
                        json={'email': email, 'password': password},
                        headers=_auth_headers())
    return _json(response) or {}


def auth_sign_out(access_token: str) -> None:
    _request('POST', f"{config.SUPABASE_URL}/auth/v1/logout", 'sign out',
             headers=_auth_headers(access_token))


def auth_get_user(access_token: str) -> Dict[str, Any]:
    response = _request('GET', f"{config.SUPABASE_URL}/auth/v1/user", 'get user',
                        headers=_auth_headers(access_token))
    return _json(response) or {}
