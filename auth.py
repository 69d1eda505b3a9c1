# Authentication for Spody Admin
# Supabase password auth first, local demo account as a fallback.
# Flask-Login tracks the admin; the signed session keeps the auth method,
# the stored user and the Supabase token. API clients may send
# `Authorization: Bearer <jwt>` instead of a session cookie.

import logging
from typing import Dict, Any, Optional

from flask import session, jsonify, has_request_context
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    login_required,
    current_user,
)

import config
import supabase_client as db

# Configure logging
logger = logging.getLogger(__name__)

SESSION_KEYS = ('auth_method', 'auth_user', 'access_token', 'auth_token')

DEMO_TOKEN = 'demo_token_for_local_auth'
CLIENT_INFO = 'spody-admin/1.0.0'

NOT_ADMIN_MESSAGE = 'This account has no access to the admin dashboard.'

login_manager = LoginManager()


class AdminUser(UserMixin):
    """
    Flask-Login representation of a dashboard admin.

    Attributes
    ----------
    id : str
        Supabase user id, or '1' for the demo account.
    email : str
    role : str
        Always 'admin'; other accounts never get this far.
    auth_method : str
        'supabase' or 'local'.
    access_token : str | None
        Supabase JWT forwarded to PostgREST.
    """

    def __init__(self, user_id, email, role='admin', auth_method='supabase', access_token=None):
        self.id = user_id
        self.email = email
        self.role = role
        self.auth_method = auth_method
        self.access_token = access_token

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'role': self.role}


def is_admin_account(user: Dict[str, Any]) -> bool:
    """A GoTrue user is an admin by role (top level or app_metadata) or by allowlisted email."""
    app_metadata = user.get('app_metadata') or {}
    if user.get('role') == 'admin' or app_metadata.get('role') == 'admin':
        return True
    email = (user.get('email') or '').strip().lower()
    return bool(email) and email in config.ADMIN_EMAILS


def demo_login_allowed() -> bool:
    # Production only honours demo credentials set explicitly in the environment
    return not config.is_production() or config.DEMO_ADMIN_CONFIGURED


def _demo_user() -> Dict[str, Any]:
    return {'id': '1', 'email': config.DEMO_ADMIN_EMAIL, 'role': 'admin'}


def _is_demo_account(email: str, password: str) -> bool:
    return (demo_login_allowed()
            and email == config.DEMO_ADMIN_EMAIL
            and password == config.DEMO_ADMIN_PASSWORD)


def _start_session(auth_method: str, user: Dict[str, Any], access_token: Optional[str] = None) -> None:
    session['auth_method'] = auth_method
    session['auth_user'] = user
    session.pop('auth_token', None)
    if access_token:
        session['access_token'] = access_token
    else:
        session.pop('access_token', None)
    login_user(AdminUser(user['id'], user.get('email'), auth_method=auth_method,
                         access_token=access_token))


def _store_local_login() -> Dict[str, Any]:
    user = _demo_user()
    _start_session('local', user)
    return {'success': True, 'user': user, 'session': {'access_token': 'mock_token'}}


def _revoke(token: Optional[str]) -> None:
    if not token:
        return
    try:
        db.auth_sign_out(token)
    except Exception as e:
        logger.error(f'Error revoking session: {str(e)}')


def _clear_local_state() -> None:
    for key in SESSION_KEYS:
        session.pop(key, None)


def _stored_user() -> Optional[Dict[str, Any]]:
    user = session.get('auth_user')
    if isinstance(user, dict) and user.get('id'):
        return user
    if user is not None:
        logger.error('Stored auth user is malformed')
    return None


@login_manager.user_loader
def load_user(user_id):
    user = _stored_user()
    if not user or str(user['id']) != user_id or user.get('role') != 'admin':
        return None
    return AdminUser(user['id'], user.get('email'),
                     auth_method=session.get('auth_method') or 'supabase',
                     access_token=session.get('access_token'))


@login_manager.request_loader
def load_user_from_request(req):
    """Accept a Supabase JWT from the Authorization header."""
    scheme, _, token = req.headers.get('Authorization', '').partition(' ')
    token = token.strip()
    if scheme.lower() != 'bearer' or not token or token == DEMO_TOKEN:
        return None

    try:
        user = db.auth_get_user(token)
    except db.SupabaseError as e:
        logger.warning(f'Bearer token rejected: {e.message}')
        return None

    if not user.get('id') or not is_admin_account(user):
        logger.warning(f"Bearer token for non-admin account {user.get('email')}")
        return None
    return AdminUser(user['id'], user.get('email'), access_token=token)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Unauthorized'}), 401


def is_logged_in() -> bool:
    return has_request_context() and current_user.is_authenticated


def current_auth_method() -> Optional[str]:
    return current_user.auth_method if is_logged_in() else None


def sign_in(email: str, password: str) -> Dict[str, Any]:
    """Sign in via Supabase; fall back to the demo account if that fails."""
    logger.info(f'Authenticating {email}')

    try:
        result = db.auth_sign_in(email, password)
        user = result.get('user') or {}
        token = result.get('access_token')

        if not user.get('id') or not is_admin_account(user):
            logger.warning(f'Rejected sign-in for non-admin account {email}')
            _revoke(token)
            return {
                'success': False,
                'error': {'message': NOT_ADMIN_MESSAGE, 'code': 'not_admin'},
            }

        stored = {'id': user['id'], 'email': user.get('email'), 'role': 'admin'}
        _start_session('supabase', stored, token)
        logger.info(f'Authenticated {email} with Supabase')
        return {
            'success': True,
            'user': stored,
            'session': {
                'access_token': token,
                'expires_in': result.get('expires_in'),
            },
        }

    except db.SupabaseError as e:
        logger.error(f'Supabase authentication error: {e.message}')
        if _is_demo_account(email, password):
            logger.info('Using local fallback auth for demo account')
            return _store_local_login()
        return {'success': False, 'error': e.to_dict()}

    except Exception as e:
        logger.error(f'Unexpected auth error: {str(e)}')
        if _is_demo_account(email, password):
            logger.info('Using local fallback auth for demo account after error')
            return _store_local_login()
        return {
            'success': False,
            'error': {'message': 'Authorization error. Check your credentials and try again.'},
        }


def sign_out() -> Dict[str, Any]:
    """Sign out remotely when possible; local state is always cleared."""
    token = request_access_token()
    try:
        if token:
            db.auth_sign_out(token)
        return {'success': True}
    except Exception as e:
        logger.error(f'Error signing out: {str(e)}')
        return {'success': False, 'error': str(e)}
    finally:
        logout_user()
        _clear_local_state()


def get_current_user() -> Optional[Dict[str, Any]]:
    try:
        if not is_logged_in():
            return None

        if current_user.auth_method == 'local':
            return current_user.to_dict()

        token = current_user.access_token
        if token:
            try:
                user = db.auth_get_user(token)
                if user.get('id') and is_admin_account(user):
                    return {'id': user['id'], 'email': user.get('email'), 'role': 'admin'}
            except db.SupabaseError as e:
                logger.warning(f'Supabase session check failed: {e.message}')

        # Expired remote session but still logged in here
        return current_user.to_dict()

    except Exception as e:
        logger.error(f'Unexpected error getting current user: {str(e)}')
        if has_request_context() and session.get('_user_id'):
            return _stored_user() or _demo_user()
        return None


def get_auth_headers() -> Dict[str, str]:
    """Authorization headers for calls made on behalf of the logged-in admin."""
    try:
        if not is_logged_in():
            return {}

        access_token = request_access_token()
        if access_token:
            return {'Authorization': f'Bearer {access_token}'}

        stored_token = session.get('auth_token')
        if stored_token:
            return {'Authorization': f'Bearer {stored_token}'}

        if current_user.auth_method == 'local':
            session['auth_token'] = DEMO_TOKEN
            return {
                'Authorization': f'Bearer {DEMO_TOKEN}',
                'X-Client-Info': CLIENT_INFO,
                'X-Demo-Auth': 'true',
            }

        return {}

    except Exception as e:
        logger.error(f'Error getting auth headers: {str(e)}')
        return {}


def request_access_token() -> Optional[str]:
    """User JWT to forward to PostgREST. Demo tokens are never forwarded."""
    if not is_logged_in() or current_user.auth_method != 'supabase':
        return None
    return current_user.access_token
