# Configuration for the Spody Admin backend
# Values come from the environment; defaults are safe for local development.

import os

# Supabase
SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY')
SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY')

# Flask session signing
FLASK_SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-change-me')

# Main application
APP_URL = os.environ.get('APP_URL', 'http://localhost:3000')

# Demo account used when Supabase auth is unavailable
DEMO_ADMIN_EMAIL = os.environ.get('DEMO_ADMIN_EMAIL', 'admin@spody.app')
DEMO_ADMIN_PASSWORD = os.environ.get('DEMO_ADMIN_PASSWORD', 'admin123')
# Set when both demo credentials come from the environment; required in production
DEMO_ADMIN_CONFIGURED = bool(os.environ.get('DEMO_ADMIN_EMAIL') and os.environ.get('DEMO_ADMIN_PASSWORD'))

# Comma-separated emails allowed into the dashboard besides role=admin accounts
ADMIN_EMAILS = [e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',') if e.strip()]

APP_ENV = os.environ.get('APP_ENV', 'development')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

# Seconds between background test-model cleanups; 0 disables
CLEANUP_INTERVAL_SECONDS = int(os.environ.get('CLEANUP_INTERVAL_SECONDS', '0'))

CRM_VERSION = '1.0.0'

# Storage bucket holding model avatars
AVATARS_BUCKET = 'ai-models-avatars'

# Request timeouts
TIMEOUT = (5, 60)  # (connect, read)

ANALYTICS_CONFIG = {
    'defaultPeriod': 'month',
    'refreshInterval': 300000,  # ms
    'chartColors': {
        'primary': '#4f46e5',
        'secondary': '#0ea5e9',
        'success': '#10b981',
        'warning': '#f59e0b',
        'danger': '#ef4444',
        'gray': '#6b7280',
    },
}

MODEL_UPLOAD_CONFIG = {
    'maxFileSize': 5 * 1024 * 1024,
    'allowedTypes': ['image/jpeg', 'image/png', 'image/gif', 'image/webp'],
    'imageDimensions': {
        'minWidth': 400,
        'minHeight': 400,
        'maxWidth': 2000,
        'maxHeight': 2000,
    },
}


def is_production() -> bool:
    return APP_ENV == 'production'
