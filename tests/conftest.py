"""Shared fixtures: an in-memory stand-in for the Supabase HTTP API."""

import re
import uuid
import threading
from datetime import datetime, timezone

import pytest

import analytics
import avatar_service
import cleanup_service
import config
import diagnostics
import model_service
import supabase_client
from analytics import parse_timestamp
from supabase_client import SupabaseError

RESERVED_PARAMS = ('select', 'order', 'limit', 'offset')


def _as_str(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _compare(left, right):
    """Return -1/0/1 comparing a column value with a filter operand."""
    try:
        a, b = parse_timestamp(str(left)), parse_timestamp(right)
    except ValueError:
        try:
            a, b = float(left), float(right)
        except (TypeError, ValueError):
            a, b = _as_str(left), right
    return (a > b) - (a < b)


def _like_regex(pattern, ignore_case):
    out = []
    chars = iter(pattern)
    for ch in chars:
        if ch == '\\':
            out.append(re.escape(next(chars, '\\')))
        elif ch == '%':
            out.append('.*')
        elif ch == '_':
            out.append('.')
        else:
            out.append(re.escape(ch))
    return re.compile(''.join(out), re.IGNORECASE if ignore_case else 0)


def _matches(row, column, expr):
    negate = expr.startswith('not.')
    if negate:
        expr = expr[4:]
    op, _, operand = expr.partition('.')
    value = row.get(column)

    if op == 'is':
        result = value is None if operand == 'null' else _as_str(value) == operand
    elif value is None:
        result = False
    elif op == 'eq':
        result = _as_str(value) == operand
    elif op == 'neq':
        result = _as_str(value) != operand
    elif op in ('gt', 'gte', 'lt', 'lte'):
        cmp = _compare(value, operand)
        result = {'gt': cmp > 0, 'gte': cmp >= 0, 'lt': cmp < 0, 'lte': cmp <= 0}[op]
    elif op == 'in':
        result = _as_str(value) in operand.strip('()').split(',')
    elif op in ('like', 'ilike'):
        result = bool(_like_regex(operand, op == 'ilike').fullmatch(_as_str(value)))
    else:
        raise AssertionError(f'unsupported filter {op}')
    return not result if negate else result


class FakeSupabase:
    """Tables held in dicts, queried with PostgREST-style params."""

    def __init__(self):
        self.tables = {}
        self.buckets = [config.AVATARS_BUCKET]
        self.uploads = {}
        self.rpc_handlers = {}
        self.users = {}
        self.tokens = {}
        self.calls = []
        self._failures = {}
        self._lock = threading.Lock()

    # -- test helpers ---------------------------------------------------------

    def seed(self, table, rows):
        for row in rows:
            row.setdefault('id', str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(dict(row))
        return rows

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def fail(self, op, name, message='boom', times=None, code=None):
        """Make the next `times` calls of op on name raise (forever when None)."""
        self._failures[(op, name)] = [SupabaseError(message, code=code, status=400), times]

    def add_user(self, email, password, role='authenticated', app_role=None):
        user = {'id': str(uuid.uuid4()), 'email': email, 'role': role}
        if app_role:
            user['app_metadata'] = {'role': app_role}
        self.users[email] = (password, user)
        return user

    def count_calls(self, op, name=None):
        return len([c for c in self.calls if c[0] == op and (name is None or c[1] == name)])

    def _check(self, op, name):
        with self._lock:
            self.calls.append((op, name))
            entry = self._failures.get((op, name))
            if not entry:
                return
            error, remaining = entry
            if remaining is not None:
                if remaining <= 0:
                    return
                entry[1] = remaining - 1
        raise error

    # -- query engine ---------------------------------------------------------

    def _query(self, table, params):
        pairs = list(params.items()) if isinstance(params, dict) else list(params or [])
        rows = [r for r in self.rows(table)
                if all(_matches(r, col, expr) for col, expr in pairs if col not in RESERVED_PARAMS)]
        return pairs, rows

    @staticmethod
    def _shape(pairs, rows):
        options = dict(p for p in pairs if p[0] in RESERVED_PARAMS)
        order = options.get('order')
        if order:
            column, _, direction = order.partition('.')
            rows = sorted(rows, key=lambda r: (r.get(column) is None, _as_str(r.get(column))),
                          reverse=direction.startswith('desc'))
        if 'limit' in options:
            rows = rows[:int(options['limit'])]
        columns = options.get('select', '*')
        if columns != '*':
            names = [c.strip() for c in columns.split(',')]
            rows = [{n: r.get(n) for n in names} for r in rows]
        return [dict(r) for r in rows]

    def select(self, table, params=None, access_token=None):
        self._check('select', table)
        pairs, rows = self._query(table, params)
        return self._shape(pairs, rows)

    def select_with_count(self, table, params=None, access_token=None):
        self._check('select', table)
        pairs, rows = self._query(table, params)
        return self._shape(pairs, rows), len(rows)

    def select_single(self, table, params, access_token=None):
        rows = self.select(table, params, access_token)
        if len(rows) != 1:
            raise SupabaseError('JSON object requested, multiple (or no) rows returned',
                                code='PGRST116', status=406)
        return rows[0]

    def insert(self, table, rows, access_token=None):
        self._check('insert', table)
        created = []
        for row in rows:
            record = dict(row)
            record.setdefault('id', str(uuid.uuid4()))
            record.setdefault('created_at', datetime.now(timezone.utc).isoformat())
            self.rows(table).append(record)
            created.append(dict(record))
        return created

    def upsert(self, table, rows, access_token=None):
        self._check('upsert', table)
        result = []
        for row in rows:
            existing = [r for r in self.rows(table) if 'id' in row and r.get('id') == row['id']]
            if existing:
                existing[0].update(row)
                result.append(dict(existing[0]))
            else:
                result.extend(self.insert(table, [row]))
        return result

    def update(self, table, filters, values, access_token=None):
        self._check('update', table)
        _, rows = self._query(table, filters)
        for row in rows:
            row.update(values)
        return [dict(r) for r in rows]

    def delete(self, table, filters, access_token=None):
        self._check('delete', table)
        _, rows = self._query(table, filters)
        self.tables[table] = [r for r in self.rows(table) if r not in rows]
        return [dict(r) for r in rows]

    def rpc(self, function, args=None, access_token=None):
        self._check('rpc', function)
        handler = self.rpc_handlers.get(function)
        if handler is None:
            raise SupabaseError(f'Could not find the function public.{function}', code='PGRST202', status=404)
        return handler(args or {})

    # -- storage --------------------------------------------------------------

    def list_buckets(self):
        self._check('list_buckets', None)
        return [{'id': name, 'name': name} for name in self.buckets]

    def upload_object(self, bucket, path, data, content_type, upsert=True, cache_control='3600'):
        self._check('upload', path)
        self.uploads[f'{bucket}/{path}'] = (data, content_type)
        return {'path': path, 'Key': f'{bucket}/{path}'}

    # -- auth -----------------------------------------------------------------

    def auth_sign_in(self, email, password):
        self._check('auth', 'sign_in')
        stored = self.users.get(email)
        if not stored or stored[0] != password:
            raise SupabaseError('Invalid login credentials', code='invalid_credentials', status=400)
        token = f'jwt-{uuid.uuid4()}'
        self.tokens[token] = stored[1]
        return {'access_token': token, 'expires_in': 3600, 'user': stored[1]}

    def auth_sign_out(self, access_token):
        self._check('auth', 'sign_out')
        self.tokens.pop(access_token, None)

    def auth_get_user(self, access_token):
        self._check('auth', 'get_user')
        user = self.tokens.get(access_token)
        if not user:
            raise SupabaseError('invalid JWT', code='bad_jwt', status=401)
        return user


PATCHED = ('select', 'select_with_count', 'select_single', 'insert', 'upsert', 'update',
           'delete', 'rpc', 'list_buckets', 'upload_object', 'auth_sign_in',
           'auth_sign_out', 'auth_get_user')


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    fake = FakeSupabase()
    for name in PATCHED:
        monkeypatch.setattr(supabase_client, name, getattr(fake, name))
    monkeypatch.setattr(config, 'SUPABASE_URL', 'https://test.supabase.co')
    monkeypatch.setattr(config, 'SUPABASE_ANON_KEY', 'anon-key')
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    monkeypatch.setattr(config, 'ADMIN_EMAILS', [])

    monkeypatch.setattr(model_service, 'UPDATE_REFETCH_DELAY', 0)
    monkeypatch.setattr(model_service, 'DELETE_RETRY_DELAY', 0)
    monkeypatch.setattr(model_service, 'BATCH_DELAY', 0)
    monkeypatch.setattr(cleanup_service, 'BATCH_DELAY', 0)
    monkeypatch.setattr(diagnostics, 'RETRY_DELAY', 0)

    analytics.clear_analytics_cache()
    avatar_service.clear_all_avatar_cache()
    yield fake
    analytics.clear_analytics_cache()
    avatar_service.clear_all_avatar_cache()


@pytest.fixture
def flask_app():
    from app import app
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def admin_client(client):
    with client.session_transaction() as sess:
        sess['_user_id'] = '1'
        sess['_fresh'] = True
        sess['auth_method'] = 'local'
        sess['auth_user'] = {'id': '1', 'email': config.DEMO_ADMIN_EMAIL, 'role': 'admin'}
    return client
