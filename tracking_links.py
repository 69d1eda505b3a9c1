# Tracking links: UTM-tagged URLs with a short ref code.

import random
import string
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Any, Optional, List
from urllib.parse import urlencode

import config
import supabase_client as db

# Configure logging
logger = logging.getLogger(__name__)

CODE_LENGTH = 8
CODE_CHARS = string.ascii_uppercase + string.ascii_lowercase + string.digits


def generate_unique_code() -> str:
    return ''.join(random.choice(CODE_CHARS) for _ in range(CODE_LENGTH))


def build_tracking_url(code: str, source: str, medium: Optional[str] = None,
                       campaign: Optional[str] = None, content: Optional[str] = None,
                       term: Optional[str] = None) -> str:
    params = [('utm_source', source)]
    for name, value in (('utm_medium', medium), ('utm_campaign', campaign),
                        ('utm_content', content), ('utm_term', term)):
        if value:
            params.append((name, value))
    params.append(('ref', code))
    return f'{config.APP_URL}?{urlencode(params)}'


def _click_count(link_id: str) -> int:
    _, count = db.select_with_count('user_traffic_sources',
                                    {'select': 'id', 'tracking_link_id': f'eq.{link_id}'})
    return count


def list_tracking_links() -> List[Dict[str, Any]]:
    """All links, newest first, each with its click count."""
    links = db.select('tracking_links', {'select': '*', 'order': 'created_at.desc'})
    if not links:
        return []

    with ThreadPoolExecutor(max_workers=min(8, len(links))) as pool:
        counts = list(pool.map(_click_count, [link['id'] for link in links]))

    logger.info(f'Returning {len(links)} tracking links')
    return [{**link, 'clicks': count} for link, count in zip(links, counts)]


def create_tracking_link(name: str, source: str, medium: Optional[str] = None,
                         campaign: Optional[str] = None, content: Optional[str] = None,
                         term: Optional[str] = None) -> Dict[str, Any]:
    if not name or not source:
        raise ValueError('Name and source are required')

    code = generate_unique_code()
    record = {
        'name': name,
        'code': code,
        'source': source,
        'medium': medium,
        'campaign': campaign,
        'content': content,
        'term': term,
        'url': build_tracking_url(code, source, medium, campaign, content, term),
        'is_active': True,
    }
    rows = db.insert('tracking_links', [record])
    link = rows[0] if rows else record
    logger.info(f"Tracking link created: {link.get('name')} ({code})")
    return {**link, 'clicks': 0}


def delete_tracking_link(link_id: str) -> bool:
    if not link_id:
        raise ValueError('Link id is required')
    db.delete('tracking_links', {'id': f'eq.{link_id}'})
    logger.info(f'Tracking link {link_id} deleted')
    return True
