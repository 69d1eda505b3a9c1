# Cleanup Service
# Removes test records left behind in ai_models by diagnostics and manual testing.

import time
import logging
import threading

import supabase_client as db
import avatar_service

# Configure logging
logger = logging.getLogger(__name__)

CLEANUP_PATTERNS = [
    '_test_%',      # diagnostics records
    'Test Model%',
    '%test%',       # anything else with "test" in the name
]

BATCH_SIZE = 20
BATCH_DELAY = 0.3
PATTERN_LIMIT = 100


def cleanup_all_test_models() -> int:
    """Delete test models matching any cleanup pattern. Returns the number deleted."""
    total_deleted = 0
    logger.info('Starting comprehensive test model cleanup')

    for pattern in CLEANUP_PATTERNS:
        try:
            models = db.select('ai_models', {
                'select': 'id,name',
                'name': f'ilike.{pattern}',
                'limit': str(PATTERN_LIMIT),
            })
        except Exception as e:
            logger.error(f'Error finding test models with pattern {pattern}: {str(e)}')
            continue

        if not models:
            continue

        logger.info(f"Found {len(models)} test models with pattern {pattern}: "
                    f"{', '.join(m.get('name', '') for m in models)}")

        for i in range(0, len(models), BATCH_SIZE):
            batch = [m['id'] for m in models[i:i + BATCH_SIZE]]
            try:
                db.delete('ai_models', {'id': db.in_filter(batch)})
                total_deleted += len(batch)
                for model_id in batch:
                    avatar_service.clear_model_cache(model_id)
                logger.info(f'Deleted {len(batch)} test models in batch')
            except Exception as e:
                logger.error(f'Error deleting batch of test models: {str(e)}')
            time.sleep(BATCH_DELAY)

    logger.info(f'Deleted {total_deleted} test models')
    return total_deleted


def scheduled_cleanup() -> int:
    try:
        logger.info('Running scheduled test model cleanup')
        return cleanup_all_test_models()
    except Exception as e:
        logger.error(f'Error in scheduled cleanup: {str(e)}')
        return 0


def run_with_timing() -> int:
    start = time.time()
    try:
        deleted = cleanup_all_test_models()
        logger.info(f'Cleanup completed in {int((time.time() - start) * 1000)}ms, '
                    f'deleted {deleted} test models')
        return deleted
    except Exception as e:
        logger.error(f'Cleanup failed after {int((time.time() - start) * 1000)}ms: {str(e)}')
        return 0


def start_cleanup_scheduler(interval_seconds: float) -> threading.Event:
    """Run scheduled_cleanup every interval on a daemon thread. Set the returned event to stop."""
    stop_event = threading.Event()

    def _loop():
        while not stop_event.wait(interval_seconds):
            scheduled_cleanup()

    thread = threading.Thread(target=_loop, name='test-model-cleanup', daemon=True)
    thread.start()
    logger.info(f'Test model cleanup scheduled every {interval_seconds}s')
    return stop_event
