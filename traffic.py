# Traffic source tracking
# Captures UTM / ref parameters into a cookie on landing and saves them
# against the user once they register. Also serves source statistics.

import json
import time
import random
import string
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

from flask import request, after_this_request

import config
import supabase_client as db
from analytics import parse_timestamp, round_half_up

# Configure logging
logger = logging.getLogger(__name__)

TRACKING_COOKIE = 'tracking_data'
TRACKING_COOKIE_MAX_AGE = 30 * 24 * 60 * 60
TRACKING_PARAMS = ('utm_source', 'utm_medium', 'utm_campaign', 'utm_content', 'utm_term', 'ref')
SKIPPED_PREFIXES = ('/api', '/static', '/favicon.ico', '/health')

SOCIAL_SOURCES = ['facebook', 'instagram', 'twitter', 'linkedin', 'vk', 'telegram', 'youtube', 'tiktok']
SEARCH_SOURCES = ['google', 'yandex', 'bing', 'yahoo', 'duckduckgo']
PAID_MEDIUMS = ['cpc', 'ppc', 'paid', 'ads']
SEARCH_REFERRERS = ['google', 'yandex', 'bing']
SOCIAL_REFERRERS = ['facebook', 'instagram', 'twitter', 'vk', 'telegram', 'youtube']

# (substrings, label) in match order
REFERRER_SITES = [
    (('google.com', 'google.ru'), 'Google'),
    (('yandex.ru', 'yandex.com'), 'Yandex'),
    (('bing.com',), 'Bing'),
    (('mail.ru',), 'Mail.ru'),
    (('rambler.ru',), 'Rambler'),
    (('vk.com', 'vkontakte.ru'), 'VK'),
    (('facebook.com', 'fb.com'), 'Facebook'),
    (('instagram.com',), 'Instagram'),
    (('telegram.org', 't.me'), 'Telegram'),
    (('twitter.com', 'x.com'), 'Twitter'),
    (('tiktok.com',), 'TikTok'),
    (('youtube.com',), 'YouTube'),
    (('ok.ru', 'odnoklassniki.ru'), 'Odnoklassniki'),
    (('whatsapp.com',), 'WhatsApp'),
    (('viber.com',), 'Viber'),
    (('habr.com',), 'Habr'),
    (('pikabu.ru',), 'Pikabu'),
    (('reddit.com',), 'Reddit'),
    (('mail.', 'webmail', 'email'), 'Email'),
]

BASE36 = string.digits + string.ascii_lowercase


# ============================================================================
# COOKIE CAPTURE
# ============================================================================

def tracking_cookie_middleware(response):
    """after_request hook: remember UTM / ref parameters for 30 days."""
    path = request.path or '/'
    if path.startswith(SKIPPED_PREFIXES):
        return response

    args = request.args
    if not args.get('utm_source') and not args.get('ref'):
        return response

    tracking_data = {name: args.get(name) for name in TRACKING_PARAMS}
    tracking_data['referrer'] = request.headers.get('Referer')
    tracking_data['timestamp'] = int(time.time() * 1000)

    response.set_cookie(
        TRACKING_COOKIE,
        json.dumps(tracking_data),
        max_age=TRACKING_COOKIE_MAX_AGE,
        httponly=False,
        secure=config.is_production(),
        samesite='Lax',
    )
    return response


def get_tracking_data_from_cookies() -> Optional[Dict[str, Any]]:
    raw = request.cookies.get(TRACKING_COOKIE)
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error(f'Malformed tracking cookie: {str(e)}')
        return None
    return data if isinstance(data, dict) else None


def categorize_traffic_source(data: Dict[str, Any]) -> str:
    source = (data.get('utm_source') or '').lower()
    medium = (data.get('utm_medium') or '').lower()
    referrer = (data.get('referrer') or '').lower()

    if source:
        if source in SOCIAL_SOURCES:
            return 'Social'
        if source in SEARCH_SOURCES:
            return 'Search'
        if source == 'email' or medium == 'email':
            return 'Email'
        if medium == 'referral' or 'referral' in source:
            return 'Referral'
        if medium in PAID_MEDIUMS:
            return 'Ads'
        return 'Other'

    if referrer:
        if any(host in referrer for host in SEARCH_REFERRERS):
            return 'Search'
        if any(host in referrer for host in SOCIAL_REFERRERS):
            return 'Social'
        return 'Referral'

    return 'Direct'


def _expire_tracking_cookie() -> None:
    @after_this_request
    def _expire(response):
        response.delete_cookie(TRACKING_COOKIE)
        return response


def _tracking_link_id(ref: Optional[str]) -> Optional[str]:
    if not ref:
        return None
    try:
        rows = db.select('tracking_links', {'select': 'id', 'code': f'eq.{ref}', 'limit': '1'})
        return rows[0]['id'] if rows else None
    except db.SupabaseError as e:
        logger.warning(f'Could not resolve tracking link {ref}: {e.message}')
        return None


def save_user_traffic_source(user_id: str) -> None:
    """Store the cookie-tracked source for a newly registered user."""
    try:
        tracking_data = get_tracking_data_from_cookies()
        if not tracking_data:
            logger.info('No tracking data to save')
            return

        category = categorize_traffic_source(tracking_data)
        timestamp = tracking_data.get('timestamp')
        first_visit = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc) \
            if isinstance(timestamp, (int, float)) else datetime.now(timezone.utc)

        db.insert('user_traffic_sources', [{
            'user_id': user_id,
            'utm_source': tracking_data.get('utm_source'),
            'utm_medium': tracking_data.get('utm_medium'),
            'utm_campaign': tracking_data.get('utm_campaign'),
            'utm_content': tracking_data.get('utm_content'),
            'utm_term': tracking_data.get('utm_term'),
            'referrer_url': tracking_data.get('referrer'),
            'referrer_category': category,
            'tracking_link_id': _tracking_link_id(tracking_data.get('ref')),
            'first_visit_at': first_visit.isoformat(),
        }])
        logger.info(f'Traffic source saved for user {user_id}: {category}')
        _expire_tracking_cookie()

    except Exception as e:
        logger.error(f'Error saving user traffic source: {str(e)}')


# ============================================================================
# DIRECT CAPTURE
# ============================================================================

def get_referrer_category(referrer: Optional[str]) -> str:
    if not referrer:
        return 'Direct'
    url = referrer.lower()
    for needles, label in REFERRER_SITES:
        if any(needle in url for needle in needles):
            return label
    return 'Other site'


def capture_traffic_source(screen_resolution: str = '') -> Dict[str, Any]:
    """Build a traffic-source record from the current request."""
    referrer = request.referrer
    landing_page = request.full_path.rstrip('?') if request.query_string else request.path
    return {
        'referrer_category': get_referrer_category(referrer),
        'referrer_url': referrer or None,
        'landing_page': landing_page,
        'utm_source': request.args.get('utm_source') or None,
        'utm_medium': request.args.get('utm_medium') or None,
        'utm_campaign': request.args.get('utm_campaign') or None,
        'utm_term': request.args.get('utm_term') or None,
        'utm_content': request.args.get('utm_content') or None,
        'user_agent': request.headers.get('User-Agent', ''),
        'browser_language': request.accept_languages.best or '',
        'screen_resolution': screen_resolution,
    }


def generate_session_id() -> str:
    suffix = ''.join(random.choice(BASE36) for _ in range(9))
    return f'session_{int(time.time() * 1000)}_{suffix}'


def save_traffic_source(user_id: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        data = data or capture_traffic_source()
        session_id = generate_session_id()
        logger.info(f"Saving traffic source for {user_id}: {data.get('referrer_category')} "
                    f"(utm_source={data.get('utm_source')})")

        db.insert('user_traffic_sources', [{
            'user_id': user_id,
            'session_id': session_id,
            'referrer_url': data.get('referrer_url'),
            'referrer_category': data.get('referrer_category'),
            'landing_page': data.get('landing_page'),
            'utm_source': data.get('utm_source'),
            'utm_medium': data.get('utm_medium'),
            'utm_campaign': data.get('utm_campaign'),
            'utm_term': data.get('utm_term'),
            'utm_content': data.get('utm_content'),
            'user_agent': data.get('user_agent'),
            'browser_language': data.get('browser_language'),
            'screen_resolution': data.get('screen_resolution'),
        }])
        return {'success': True}

    except db.SupabaseError as e:
        logger.error(f'Error saving traffic source: {e.message}')
        return {'success': False, 'error': e.message}
    except Exception as e:
        logger.error(f'Unexpected error saving traffic source: {str(e)}')
        return {'success': False, 'error': 'Unknown error'}


# ============================================================================
# STATISTICS
# ============================================================================

def _source_stats(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    counts = Counter(row.get('referrer_category') or 'Not specified' for row in rows)
    total = len(rows)
    stats = [
        {'name': name, 'value': count, 'percentage': round_half_up(count / total * 100, 1)}
        for name, count in counts.items()
    ]
    return sorted(stats, key=lambda s: s['value'], reverse=True)


def get_traffic_sources_stats() -> List[Dict[str, Any]]:
    try:
        rows = db.select('user_traffic_sources', {'select': 'referrer_category'})
        if not rows:
            logger.info('No traffic source data yet')
            return []
        return _source_stats(rows)
    except Exception as e:
        logger.error(f'Error getting traffic source stats: {str(e)}')
        return []


def get_utm_campaigns_stats() -> List[Dict[str, Any]]:
    try:
        return db.select('user_traffic_sources', {
            'select': 'utm_source,utm_medium,utm_campaign,created_at',
            'utm_source': 'not.is.null',
        })
    except Exception as e:
        logger.error(f'Error getting UTM campaign stats: {str(e)}')
        return []


def get_user_traffic_history(user_id: str) -> List[Dict[str, Any]]:
    try:
        return db.select('user_traffic_sources', {
            'select': '*',
            'user_id': f'eq.{user_id}',
            'order': 'created_at.desc',
        })
    except Exception as e:
        logger.error(f'Error getting traffic history for {user_id}: {str(e)}')
        return []


def get_traffic_sources_by_period(days: int = 30) -> Dict[str, Any]:
    try:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        rows = db.select('user_traffic_sources', {
            'select': 'referrer_category,created_at',
            'created_at': f'gte.{since.isoformat()}',
        })
        if not rows:
            return {'daily': [], 'sources': []}

        per_day = Counter(parse_timestamp(row['created_at']).date().isoformat() for row in rows)
        daily = [{'date': day, 'count': count} for day, count in sorted(per_day.items())]
        return {'daily': daily, 'sources': _source_stats(rows)}

    except Exception as e:
        logger.error(f'Error getting traffic sources for last {days} days: {str(e)}')
        return {'daily': [], 'sources': []}


def track_user_event(event_name: str, event_data: Optional[Dict[str, Any]] = None) -> None:
    logger.info(f'User event {event_name}: {event_data or {}}')
