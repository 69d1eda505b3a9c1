# Avatar Service
# Storage uploads, per-model avatar cache, URL validation and gender fallbacks.

import re
import time
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from urllib.parse import urlparse

import config
import supabase_client as db

# Configure logging
logger = logging.getLogger(__name__)

FALLBACK_AVATARS = {
    'male': '/default-male-avatar.png',
    'female': '/default-female-avatar.png',
    'default': '/default-avatar.png',
}

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.webp', '.svg', '.bmp')

KNOWN_IMAGE_HOSTS = [
    'storage.googleapis.com',
    'supabase',
    'cloudinary.com',
    'i.imgur.com',
    'res.cloudinary.com',
    'images.unsplash.com',
    'drive.google.com',
]

# model id -> avatar url
avatar_cache: Dict[str, str] = {}
avatar_cache_lock = threading.Lock()


def _fallback(gender: str) -> str:
    return FALLBACK_AVATARS.get(gender, FALLBACK_AVATARS['default'])


def _gender_default(gender: str) -> str:
    return FALLBACK_AVATARS['male'] if gender == 'male' else FALLBACK_AVATARS['female']


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def ensure_avatars_bucket_exists() -> bool:
    """Check the avatars bucket exists. It has to be created by hand in Supabase."""
    bucket = config.AVATARS_BUCKET
    try:
        logger.info(f'Checking storage bucket {bucket}')
        buckets = db.list_buckets()
        if any(b.get('name') == bucket for b in buckets):
            return True

        logger.error(f'Bucket {bucket} does not exist. Create it in the Supabase dashboard:')
        logger.error('1. Open the project at https://app.supabase.com')
        logger.error('2. Go to "Storage"')
        logger.error(f'3. Create a bucket named "{bucket}"')
        logger.error('4. Mark it "Public" so files can be served')
        return False

    except Exception as e:
        logger.error(f'Error checking avatars bucket: {str(e)}')
        return False


def _upload_public(file_name: str, data: bytes, content_type: str) -> None:
    path = f'public/{file_name}'
    try:
        db.upload_object(config.AVATARS_BUCKET, path, data, content_type)
    except db.SupabaseError as e:
        message = e.message or ''
        if 'not found' not in message and 'does not exist' not in message:
            raise
        logger.warning(f'Upload target missing ({message}); creating public/ and retrying')
        db.upload_object(config.AVATARS_BUCKET, 'public/.keep', b'', 'text/plain')
        db.upload_object(config.AVATARS_BUCKET, path, data, content_type)


def upload_avatar_and_update_model(data: bytes, content_type: str, model_id: str) -> Dict[str, Any]:
    """Upload an avatar file and point the model's avatar_url at it."""
    try:
        if not data or not model_id:
            logger.error('Avatar upload called without file or model id')
            return {'success': False, 'error': 'File and model id are required'}

        file_name = f'{model_id}-{_epoch_ms()}.jpg'
        logger.info(f'Uploading avatar for model {model_id} ({round(len(data) / 1024)}KB, {content_type})')

        if not ensure_avatars_bucket_exists():
            return {
                'success': False,
                'error': f'Avatar storage bucket {config.AVATARS_BUCKET} is not available. '
                         f'Create it in the Supabase dashboard.',
            }

        try:
            _upload_public(file_name, data, content_type)
        except db.SupabaseError as e:
            logger.error(f'Error uploading avatar: {e.message}')
            return {'success': False, 'error': e.message}

        url = db.public_url(config.AVATARS_BUCKET, f'public/{file_name}')
        logger.info(f'Avatar uploaded. Public URL: {url}')

        try:
            db.update('ai_models', {'id': f'eq.{model_id}'},
                      {'avatar_url': url, 'updated_at': datetime.now(timezone.utc).isoformat()})
        except db.SupabaseError as e:
            logger.error(f'Error updating model {model_id} with new avatar URL: {e.message}')
            return {'success': True, 'url': url, 'error': e.message}

        with avatar_cache_lock:
            avatar_cache[model_id] = url

        return {'success': True, 'url': url}

    except Exception as e:
        logger.error(f'Unexpected error during avatar upload: {str(e)}')
        return {'success': False, 'error': str(e)}


def upload_avatar_file(data: bytes, content_type: str, filename: Optional[str] = None) -> Dict[str, Any]:
    """Upload a loose image file without touching any model."""
    try:
        name = re.sub(r'\s+', '_', filename or 'avatar')
        unique_name = f'{_epoch_ms()}_{name}'
        path = f'public/{unique_name}'
        db.upload_object(config.AVATARS_BUCKET, path, data, content_type)
        url = db.public_url(config.AVATARS_BUCKET, path)
        logger.info(f'File uploaded. Public URL: {url}')
        return {'success': True, 'url': url}
    except Exception as e:
        logger.error(f'Error uploading file: {str(e)}')
        return {'success': False, 'error': str(e)}


def get_model_avatar(model_id: str, gender: str = 'default') -> str:
    with avatar_cache_lock:
        cached = avatar_cache.get(model_id)
    if cached:
        return cached

    try:
        row = db.select_single('ai_models', {'select': 'avatar_url', 'id': f'eq.{model_id}'})
        url = row.get('avatar_url')
        if url:
            with avatar_cache_lock:
                avatar_cache[model_id] = url
            return url
        return _fallback(gender)
    except Exception as e:
        logger.error(f'Error getting avatar for model {model_id}: {str(e)}')
        return _fallback(gender)


def validate_avatar_url(url: Optional[str]) -> Optional[str]:
    """Return the URL when it is a usable http(s) address, else None."""
    if not url or not url.strip() or url in ('null', 'undefined'):
        return None

    try:
        parsed = urlparse(url)
    except ValueError as e:
        logger.warning(f'Malformed avatar URL {url}: {str(e)}')
        return None

    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        logger.warning(f'Rejected avatar URL scheme: {parsed.scheme or "none"}')
        return None

    host = (parsed.hostname or '').lower()
    if any(known in host for known in KNOWN_IMAGE_HOSTS) or url.lower().endswith(IMAGE_EXTENSIONS):
        return url

    logger.info(f'Accepting avatar URL without image extension or known host: {url}')
    return url


def get_avatar(model_id: str, gender: str = 'female') -> str:
    try:
        url = get_model_avatar(model_id, gender)
        if url.startswith('http'):
            return validate_avatar_url(url) or _gender_default(gender)
        return url
    except Exception as e:
        logger.warning(f'Error getting avatar for model {model_id}: {str(e)}')
        return _gender_default(gender)


def upload_avatar(data: bytes, content_type: str, model_id: str) -> str:
    result = upload_avatar_and_update_model(data, content_type, model_id)
    if not result.get('success') or not result.get('url'):
        raise RuntimeError(str(result.get('error') or 'Avatar upload failed'))
    return result['url']


def clear_model_cache(model_id: str) -> bool:
    with avatar_cache_lock:
        if model_id and model_id in avatar_cache:
            del avatar_cache[model_id]
            return True
    return False


def clear_all_avatar_cache() -> bool:
    with avatar_cache_lock:
        avatar_cache.clear()
    return True


def clear_cache(model_id: Optional[str] = None) -> bool:
    if model_id:
        return clear_model_cache(model_id)
    return clear_all_avatar_cache()
