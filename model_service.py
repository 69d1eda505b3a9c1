# Model Service
# CRUD for AI models (the ai_models table) plus test-record helpers.

import io
import time
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

from PIL import Image

import config
import supabase_client as db
import avatar_service
import schema_sql
from auth import request_access_token

# Configure logging
logger = logging.getLogger(__name__)

VALID_GENDERS = ('male', 'female', '')
UPDATABLE_FIELDS = ('name', 'bio', 'avatar_url', 'traits', 'genres', 'gender')

# Pauses between retries, seconds
UPDATE_REFETCH_DELAY = 0.5
DELETE_RETRY_DELAY = 1.0
BATCH_DELAY = 0.3

BATCH_SIZE = 20
TEST_NAME_PATTERNS = ['like._test\\_%', 'like.Test Model%']


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _test_name() -> str:
    return f"_test_{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}Z"


def get_all_models() -> List[Dict[str, Any]]:
    try:
        return db.select('ai_models', {'select': '*', 'order': 'created_at.desc'},
                         access_token=request_access_token())
    except Exception as e:
        logger.error(f'Error fetching models: {str(e)}')
        raise


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    try:
        return db.select_single('ai_models', {'select': '*', 'id': f'eq.{model_id}'},
                                access_token=request_access_token())
    except Exception as e:
        logger.error(f'Error fetching model {model_id}: {str(e)}')
        return None


def create_model(model: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    name = (model.get('name') or '').strip()
    if not name:
        raise ValueError('Model name is required')

    gender = model.get('gender') or 'female'
    if gender not in VALID_GENDERS:
        raise ValueError(f'Invalid gender: {gender}')

    record = {
        'name': name,
        'bio': model.get('bio') or '',
        'avatar_url': model.get('avatar_url') or '',
        'traits': model.get('traits') or [],
        'genres': model.get('genres') or [],
        'gender': gender,
    }

    try:
        rows = db.insert('ai_models', [record], access_token=request_access_token())
    except Exception as e:
        logger.error(f'Error creating model: {str(e)}')
        raise

    return rows[0] if rows else None


def update_model(model_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Update a model. Falls back to a re-fetch when the update returns no row."""
    logger.info(f'Updating model {model_id} with fields: {sorted(updates.keys())}')

    if 'name' in updates and not (updates.get('name') or '').strip():
        raise ValueError('Model name cannot be empty')
    if 'gender' in updates and updates['gender'] not in VALID_GENDERS:
        raise ValueError(f"Invalid gender: {updates['gender']}")

    values = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
    if 'name' in values:
        values['name'] = values['name'].strip()
    values['updated_at'] = _now_iso()

    try:
        rows = db.update('ai_models', {'id': f'eq.{model_id}'}, values,
                         access_token=request_access_token())
    except db.SupabaseError as e:
        logger.error(f'Error updating model {model_id}: {e.message} '
                     f'(code={e.code}, details={e.details}, hint={e.hint})')
        raise

    if not rows:
        logger.warning('No data returned from update. Fetching updated model separately.')
        time.sleep(UPDATE_REFETCH_DELAY)
        model = get_model_by_id(model_id)
        if not model:
            raise RuntimeError('Update operation might have succeeded, but could not retrieve updated model')
    else:
        model = rows[0]

    if 'avatar_url' in updates:
        avatar_service.clear_cache(model_id)

    return model


def delete_model(model_id: str) -> bool:
    """Delete a model, escalating to the SECURITY DEFINER function when RLS blocks it."""
    token = request_access_token()
    logger.info(f'Deleting model {model_id}')

    try:
        db.rpc('delete_model', {'model_id': model_id}, access_token=token)
        logger.info(f'Model {model_id} deleted via stored procedure')
        avatar_service.clear_cache(model_id)
        return True
    except Exception as e:
        logger.warning(f'delete_model procedure unavailable, using plain delete: {str(e)}')

    try:
        db.delete('ai_models', {'id': f'eq.{model_id}'}, access_token=token)
    except db.SupabaseError as first_error:
        logger.error(f'First delete attempt for model {model_id} failed: {first_error.message}')
        time.sleep(DELETE_RETRY_DELAY)

        try:
            db.delete('ai_models', {'id': f'eq.{model_id}'}, access_token=token)
        except db.SupabaseError as second_error:
            logger.error(f'Second delete attempt for model {model_id} failed: {second_error.message}')
            try:
                logger.info('Creating delete_model procedure')
                db.rpc('create_delete_model_function', access_token=token)
                db.rpc('delete_model', {'model_id': model_id}, access_token=token)
            except Exception as proc_error:
                logger.error(f'Could not delete model via procedure: {str(proc_error)}')
                raise second_error

    avatar_service.clear_cache(model_id)
    logger.info(f'Model {model_id} deleted')
    return True


def _check_dimensions(data: bytes) -> None:
    limits = config.MODEL_UPLOAD_CONFIG['imageDimensions']
    try:
        image = Image.open(io.BytesIO(data))
        width, height = image.size
    except Exception as e:
        raise ValueError(f'Cannot read image: {str(e)}')

    if width < limits['minWidth'] or height < limits['minHeight']:
        raise ValueError(f"Image is {width}x{height}; minimum is "
                         f"{limits['minWidth']}x{limits['minHeight']}")
    if width > limits['maxWidth'] or height > limits['maxHeight']:
        raise ValueError(f"Image is {width}x{height}; maximum is "
                         f"{limits['maxWidth']}x{limits['maxHeight']}")


def upload_avatar(model_id: str, data: bytes, content_type: str) -> str:
    """Validate an image and store it as the model's avatar. Returns the public URL."""
    try:
        if not model_id or not data:
            raise ValueError('Model id and avatar file are required')

        allowed = config.MODEL_UPLOAD_CONFIG['allowedTypes']
        if content_type not in allowed:
            raise ValueError(f"Unsupported file type: {content_type}. Supported: {', '.join(allowed)}")

        max_size = config.MODEL_UPLOAD_CONFIG['maxFileSize']
        if len(data) > max_size:
            raise ValueError(f'File size ({round(len(data) / 1024)}KB) exceeds the '
                             f'{max_size // (1024 * 1024)}MB limit')

        _check_dimensions(data)

        url = avatar_service.upload_avatar(data, content_type, model_id)
        avatar_service.clear_cache(model_id)
        return url

    except Exception as e:
        logger.error(f'Error uploading avatar for model {model_id}: {str(e)}')
        message = e.message if isinstance(e, db.SupabaseError) else str(e)
        raise ValueError(f'Avatar upload failed: {message}') from e


def get_avatar_url(model_id: str) -> str:
    model = get_model_by_id(model_id)
    if not model:
        raise LookupError(f'Model {model_id} not found')
    return avatar_service.get_avatar(model_id, model.get('gender') or 'female')


def create_test_model() -> Optional[Dict[str, Any]]:
    test_model = {
        'name': _test_name(),
        'bio': 'Test record for diagnostics - will be deleted',
        'traits': ['test', 'demo', 'sample'],
        'genres': ['test'],
        'gender': 'female',
    }
    logger.info(f"Creating test model {test_model['name']}")

    try:
        db.select('ai_models', {'select': 'id,gender', 'limit': '1'},
                  access_token=request_access_token())
    except db.SupabaseError as e:
        if 'gender' in e.message and 'column' in e.message:
            raise RuntimeError('The ai_models table needs a gender column. '
                               'Run the gender column migration in the Supabase SQL editor.') from e
        raise

    return create_model(test_model)


def cleanup_test_models() -> int:
    """Delete every test model. Returns how many were deleted."""
    token = request_access_token()

    try:
        db.rpc('execute_sql', {'sql_query': schema_sql.ensure_gender_column_sql()}, access_token=token)
    except Exception as e:
        logger.info(f'Schema check skipped: {str(e)}')

    ids: List[str] = []
    for pattern in TEST_NAME_PATTERNS:
        rows = db.select('ai_models', {'select': 'id', 'name': pattern}, access_token=token)
        for row in rows:
            if row['id'] not in ids:
                ids.append(row['id'])

    if not ids:
        logger.info('No test models found')
        return 0

    logger.info(f'Found {len(ids)} test models to delete')
    deleted = 0
    batches = (len(ids) + BATCH_SIZE - 1) // BATCH_SIZE
    for i in range(0, len(ids), BATCH_SIZE):
        batch = ids[i:i + BATCH_SIZE]
        logger.info(f'Deleting batch {i // BATCH_SIZE + 1}/{batches} ({len(batch)} models)')
        try:
            db.delete('ai_models', {'id': db.in_filter(batch)}, access_token=token)
            deleted += len(batch)
        except Exception as e:
            logger.error(f'Error deleting test model batch: {str(e)}')
        time.sleep(BATCH_DELAY)

    logger.info(f'Deleted {deleted} of {len(ids)} test models')
    return deleted


def test_update_model(model_id: str) -> Dict[str, Any]:
    """Rename a model to '<name> (test)' and report whether the write stuck."""
    try:
        model = get_model_by_id(model_id)
        if not model:
            return {'success': False, 'message': f'Model {model_id} not found'}

        new_name = f"{model['name']} (test)"
        token = request_access_token()

        try:
            rows = db.update('ai_models', {'id': f'eq.{model_id}'},
                             {'name': new_name, 'updated_at': _now_iso()}, access_token=token)
        except db.SupabaseError as e:
            return {'success': False, 'message': f'Update failed: {e.message}', 'data': e.to_dict()}

        if rows:
            return {'success': True, 'message': 'Test update succeeded', 'data': rows[0]}

        try:
            verify = db.select_single('ai_models', {'select': '*', 'id': f'eq.{model_id}'},
                                      access_token=token)
        except db.SupabaseError as e:
            return {
                'success': False,
                'message': 'Update may have run but returned no data, and verification failed.',
                'data': e.to_dict(),
            }

        if verify.get('name') == new_name:
            return {
                'success': True,
                'message': 'Update applied; row fetched separately because the update returned no data.',
                'data': verify,
            }

        return {'success': False, 'message': 'Update was not applied.', 'data': verify}

    except Exception as e:
        logger.error(f'Error in test update for model {model_id}: {str(e)}')
        return {'success': False, 'message': f'Test update error: {str(e)}'}
