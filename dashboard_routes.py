# Dashboard API Routes
# Flask routes for the Spody Admin dashboard: auth, analytics, models,
# tracking links, settings, diagnostics and traffic sources.

import logging

from flask import Blueprint, request, jsonify, Response

import analytics
import auth
import config
import cleanup_service
import diagnostics
import model_service
import schema_sql
import settings_service
import tracking_links
import traffic
import avatar_service
from auth import login_required

# Configure logging
logger = logging.getLogger(__name__)

# Create Blueprint
dashboard_bp = Blueprint('dashboard', __name__)

CSV_BOM = '\ufeff'


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _period_arg():
    """Return (period, error_response). Defaults to the configured period."""
    period = request.args.get('period') or config.ANALYTICS_CONFIG['defaultPeriod']
    if period not in analytics.VALID_PERIODS:
        return None, (jsonify({
            'success': False,
            'error': 'Invalid period. Use: week, month, year'
        }), 400)
    return period, None


# ============================================================================
# AUTH ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/auth/login', methods=['POST', 'OPTIONS'])
def login():
    """Sign in with Supabase, falling back to the demo admin account."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        data = request.get_json(silent=True) or {}
        email = (data.get('email') or '').strip()
        password = data.get('password') or ''

        if not email or not password:
            return jsonify({'success': False, 'error': 'Email and password are required'}), 400

        result = auth.sign_in(email, password)
        if not result.get('success'):
            status = 403 if result['error'].get('code') == 'not_admin' else 401
            return jsonify(result), status
        return jsonify(result)

    except Exception as e:
        logger.error(f'Error in login: {str(e)}')
        return jsonify({'success': False, 'error': 'Login failed'}), 500


@dashboard_bp.route('/api/auth/logout', methods=['POST', 'OPTIONS'])
def logout():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify(auth.sign_out())


@dashboard_bp.route('/api/auth/me', methods=['GET', 'OPTIONS'])
def current_user():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    user = auth.get_current_user()
    if not user:
        return jsonify({'error': 'Unauthorized'}), 401
    return jsonify({'user': user, 'authMethod': auth.current_auth_method()})


# ============================================================================
# ANALYTICS ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/analytics', methods=['GET', 'OPTIONS'])
@login_required
def get_analytics():
    """Uncached analytics. Falls back to an empty payload on upstream errors."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    period, error = _period_arg()
    if error:
        return error

    try:
        data = analytics.get_analytics_data(period)
        return jsonify({'success': True, 'data': data})
    except Exception as e:
        logger.error(f'Error getting analytics: {str(e)}')
        return jsonify({'success': False, 'error': 'Failed to load analytics'}), 500


@dashboard_bp.route('/api/analytics/optimized', methods=['GET', 'OPTIONS'])
@login_required
def get_analytics_optimized():
    """Cached analytics (5 minute TTL per period)."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    period, error = _period_arg()
    if error:
        return error

    try:
        data = analytics.get_analytics_data_optimized(period)
        return jsonify({'success': True, 'data': data})
    except Exception as e:
        logger.error(f'Error getting optimized analytics: {str(e)}')
        return jsonify({'success': False, 'error': str(e)}), 500


@dashboard_bp.route('/api/analytics/export', methods=['GET', 'OPTIONS'])
@login_required
def export_analytics():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    period, error = _period_arg()
    if error:
        return error

    try:
        data = analytics.get_analytics_data(period)
        body = CSV_BOM + analytics.export_analytics_to_csv(data)
        return Response(
            body.encode('utf-8'),
            mimetype='text/csv',
            headers={
                'Content-Type': 'text/csv; charset=utf-8',
                'Content-Disposition': 'attachment; filename="analytics_export.csv"',
            },
        )
    except Exception as e:
        logger.error(f'Error exporting analytics: {str(e)}')
        return jsonify({'error': 'Failed to export analytics'}), 500


@dashboard_bp.route('/api/analytics/cache', methods=['GET', 'DELETE', 'OPTIONS'])
@login_required
def analytics_cache():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        if request.method == 'DELETE':
            pattern = request.args.get('pattern')
            if pattern:
                analytics.invalidate_cache_pattern(pattern)
            else:
                analytics.clear_optimized_cache()
            logger.info(f"Analytics cache invalidated ({pattern or 'all'})")
            return jsonify({'success': True, 'stats': analytics.get_cache_stats()})

        return jsonify(analytics.get_cache_stats())

    except Exception as e:
        logger.error(f'Error handling analytics cache: {str(e)}')
        return jsonify({'error': str(e)}), 500


@dashboard_bp.route('/api/analytics/schema', methods=['GET', 'OPTIONS'])
@login_required
def analytics_schema():
    """SQL for the optional analytics tables and helper functions."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify({
        'tables': schema_sql.all_analytics_tables_sql(),
        'functions': {
            'delete_model': schema_sql.delete_model_function_sql(),
            'ensure_gender_column': schema_sql.ensure_gender_column_sql(),
        },
    })


@dashboard_bp.route('/api/analytics/config', methods=['GET', 'OPTIONS'])
@login_required
def analytics_config():
    """Default period, refresh interval and chart colours for the dashboard."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify(config.ANALYTICS_CONFIG)


# ============================================================================
# MODEL ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/models', methods=['GET', 'POST', 'OPTIONS'])
@login_required
def handle_models():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    if request.method == 'GET':
        try:
            return jsonify(model_service.get_all_models())
        except Exception as e:
            logger.error(f'Error fetching models: {str(e)}')
            return jsonify({'error': 'Failed to fetch models'}), 500

    try:
        data = request.get_json(silent=True) or {}
        if not (data.get('name') or '').strip():
            return jsonify({'error': 'Model name is required'}), 400

        logger.info(f"Creating model {data.get('name')}")
        created = model_service.create_model(data)
        if not created:
            return jsonify({'error': 'Failed to create model'}), 500
        return jsonify(created), 201

    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f'Error creating model: {str(e)}')
        return jsonify({'error': 'Failed to create model', 'details': str(e)}), 500


@dashboard_bp.route('/api/models/test', methods=['POST', 'DELETE', 'OPTIONS'])
@login_required
def handle_test_models():
    """POST creates a diagnostics test model, DELETE removes all test models."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        if request.method == 'DELETE':
            deleted = model_service.cleanup_test_models()
            return jsonify({'success': True, 'deleted': deleted})

        model = model_service.create_test_model()
        return jsonify({'success': True, 'model': model}), 201

    except Exception as e:
        logger.error(f'Error handling test models: {str(e)}')
        return jsonify({'success': False, 'error': str(e)}), 500


@dashboard_bp.route('/api/models/cleanup', methods=['POST', 'OPTIONS'])
@login_required
def cleanup_models():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    deleted = cleanup_service.run_with_timing()
    return jsonify({'success': True, 'deleted': deleted})


@dashboard_bp.route('/api/models/<model_id>', methods=['GET', 'PATCH', 'DELETE', 'OPTIONS'])
@login_required
def handle_model(model_id):
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    if request.method == 'GET':
        model = model_service.get_model_by_id(model_id)
        if not model:
            return jsonify({'error': f'Model {model_id} not found'}), 404
        return jsonify(model)

    try:
        if request.method == 'PATCH':
            updates = request.get_json(silent=True) or {}
            model = model_service.update_model(model_id, updates)
            return jsonify(model)

        model_service.delete_model(model_id)
        return jsonify({'success': True})

    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f'Error handling model {model_id}: {str(e)}')
        return jsonify({'error': str(e)}), 500


@dashboard_bp.route('/api/models/<model_id>/avatar', methods=['GET', 'POST', 'OPTIONS'])
@login_required
def handle_model_avatar(model_id):
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    if request.method == 'GET':
        try:
            return jsonify({'url': model_service.get_avatar_url(model_id)})
        except LookupError as e:
            return jsonify({'error': str(e)}), 404
        except Exception as e:
            logger.error(f'Error getting avatar for model {model_id}: {str(e)}')
            return jsonify({'error': str(e)}), 500

    upload = request.files.get('file')
    if upload is None:
        return jsonify({'error': 'No file provided'}), 400

    try:
        url = model_service.upload_avatar(model_id, upload.read(), upload.mimetype)
        return jsonify({'success': True, 'url': url})
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400


@dashboard_bp.route('/api/models/<model_id>/test-update', methods=['POST', 'OPTIONS'])
@login_required
def test_update(model_id):
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    result = model_service.test_update_model(model_id)
    return jsonify(result), (200 if result.get('success') else 500)


@dashboard_bp.route('/api/validate-image', methods=['POST', 'OPTIONS'])
def validate_image():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        data = request.get_json(silent=True) or {}
        url = data.get('url')
        if not url:
            return jsonify({'error': 'URL is required'}), 400

        logger.info(f'Validating image URL: {url}')
        validated = avatar_service.validate_avatar_url(url)
        if not validated:
            return jsonify({'valid': False, 'message': 'URL failed validation'})

        return jsonify({'valid': True, 'url': validated, 'message': 'URL is valid'})

    except Exception as e:
        logger.error(f'Error validating image URL: {str(e)}')
        return jsonify({'error': 'Image URL validation failed', 'details': str(e)}), 500


# ============================================================================
# TRACKING LINK ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/tracking-links', methods=['GET', 'POST', 'DELETE', 'OPTIONS'])
@login_required
def handle_tracking_links():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        if request.method == 'GET':
            return jsonify({'links': tracking_links.list_tracking_links()})

        if request.method == 'POST':
            data = request.get_json(silent=True) or {}
            if not data.get('name') or not data.get('source'):
                return jsonify({'error': 'Name and source are required'}), 400
            link = tracking_links.create_tracking_link(
                data['name'], data['source'],
                medium=data.get('medium'),
                campaign=data.get('campaign'),
                content=data.get('content'),
                term=data.get('term'),
            )
            return jsonify({'link': link})

        link_id = request.args.get('id')
        if not link_id:
            return jsonify({'error': 'Link id is required'}), 400
        tracking_links.delete_tracking_link(link_id)
        return jsonify({'success': True})

    except Exception as e:
        logger.error(f'Error handling tracking links: {str(e)}')
        return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# SETTINGS / DIAGNOSTICS ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/settings', methods=['GET', 'PUT', 'OPTIONS'])
@login_required
def handle_settings():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    if request.method == 'GET':
        return jsonify(settings_service.get_settings())

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'success': False, 'error': 'Settings object is required'}), 400

    result = settings_service.save_settings(data)
    return jsonify(result), (200 if result['success'] else 500)


@dashboard_bp.route('/api/diagnostics', methods=['GET', 'OPTIONS'])
@login_required
def get_diagnostics():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    run_insert = request.args.get('test_insert', '').lower() in ('1', 'true', 'yes')
    return jsonify(diagnostics.get_database_info(skip_test_insert=not run_insert))


@dashboard_bp.route('/api/diagnostics/delete-function', methods=['POST', 'OPTIONS'])
@login_required
def create_delete_function():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    created = diagnostics.create_delete_model_function()
    return jsonify({'success': created}), (200 if created else 500)


# ============================================================================
# TRAFFIC SOURCE ENDPOINTS
# ============================================================================

@dashboard_bp.route('/api/traffic-sources', methods=['POST', 'OPTIONS'])
def save_traffic_source():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    data = request.get_json(silent=True) or {}
    user_id = data.get('user_id')
    if not user_id:
        return jsonify({'success': False, 'error': 'user_id is required'}), 400

    source = data.get('data')
    if not source:
        source = traffic.capture_traffic_source(data.get('screen_resolution') or '')
    result = traffic.save_traffic_source(user_id, source)
    return jsonify(result), (200 if result['success'] else 500)


@dashboard_bp.route('/api/traffic-sources/register', methods=['POST', 'OPTIONS'])
def register_traffic_source():
    """Attach the cookie-tracked source to a newly registered user."""
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    data = request.get_json(silent=True) or {}
    user_id = data.get('user_id')
    if not user_id:
        return jsonify({'success': False, 'error': 'user_id is required'}), 400

    traffic.save_user_traffic_source(user_id)
    traffic.track_user_event('registration', {'user_id': user_id})
    return jsonify({'success': True})


@dashboard_bp.route('/api/traffic-sources/stats', methods=['GET', 'OPTIONS'])
@login_required
def traffic_sources_stats():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify(traffic.get_traffic_sources_stats())


@dashboard_bp.route('/api/traffic-sources/utm', methods=['GET', 'OPTIONS'])
@login_required
def traffic_sources_utm():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify(traffic.get_utm_campaigns_stats())


@dashboard_bp.route('/api/traffic-sources/period', methods=['GET', 'OPTIONS'])
@login_required
def traffic_sources_period():
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    try:
        days = int(request.args.get('days', 30))
    except ValueError:
        return jsonify({'error': 'days must be an integer'}), 400
    if days <= 0:
        return jsonify({'error': 'days must be positive'}), 400

    return jsonify(traffic.get_traffic_sources_by_period(days))


@dashboard_bp.route('/api/traffic-sources/user/<user_id>', methods=['GET', 'OPTIONS'])
@login_required
def traffic_sources_user(user_id):
    if request.method == 'OPTIONS':
        return jsonify({'message': 'OK'})

    return jsonify(traffic.get_user_traffic_history(user_id))
