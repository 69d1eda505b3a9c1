# Application settings stored in the single-row settings table.

import logging
from typing import Dict, Any

import config
import supabase_client as db

# Configure logging
logger = logging.getLogger(__name__)


def get_default_settings() -> Dict[str, Any]:
    return {
        'appName': 'Spody Admin',
        'appUrl': config.APP_URL,
        'adminEmail': config.DEMO_ADMIN_EMAIL,
        'timezone': 'UTC+3',
        'enableLogging': True,
        'openrouterKey': '',
        'supabaseUrl': config.SUPABASE_URL or '',
        'supabaseKey': '',
        'emailNotifications': True,
        'newUserNotifications': True,
        'errorNotifications': True,
        'weeklyDigest': False,
        'notificationEmail': config.DEMO_ADMIN_EMAIL,
        'dbHost': '',
        'dbName': 'postgres',
        'backupSchedule': 'weekly',
    }


def get_settings() -> Dict[str, Any]:
    try:
        return db.select_single('settings', {'select': '*'})
    except Exception as e:
        logger.error(f'Error fetching settings: {str(e)}')
        return get_default_settings()


def save_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        rows = db.upsert('settings', [settings])
        return {'success': True, 'data': rows[0] if rows else None}
    except db.SupabaseError as e:
        logger.error(f'Error saving settings: {e.message}')
        return {'success': False, 'error': e.to_dict()}
    except Exception as e:
        logger.error(f'Unexpected error saving settings: {str(e)}')
        return {'success': False, 'error': {'message': str(e)}}
