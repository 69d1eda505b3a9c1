import os
import logging

from flask import Flask, jsonify
from flask_cors import CORS

import config
from auth import login_manager
from dashboard_routes import dashboard_bp
from traffic import tracking_cookie_middleware
from cleanup_service import start_cleanup_scheduler

# Configure logging
logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.FLASK_SECRET_KEY
app.config['SESSION_COOKIE_SECURE'] = config.is_production()
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

login_manager.init_app(app)

CORS(app, resources={r"/*": {"origins": "*"}},
     supports_credentials=False,
     allow_headers=["Content-Type", "Authorization", "apikey", "x-client-info"],
     methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])

app.register_blueprint(dashboard_bp)
app.after_request(tracking_cookie_middleware)


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({'status': 'healthy', 'version': config.CRM_VERSION}), 200


if __name__ == '__main__':
    # Validate required environment variables
    required_env_vars = ['SUPABASE_URL', 'SUPABASE_ANON_KEY', 'FLASK_SECRET_KEY']
    missing_vars = [var for var in required_env_vars if not os.environ.get(var)]

    if missing_vars:
        logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
        exit(1)

    if config.is_production() and not config.DEMO_ADMIN_CONFIGURED:
        logger.info("Demo admin login disabled in production")

    if config.CLEANUP_INTERVAL_SECONDS > 0:
        start_cleanup_scheduler(config.CLEANUP_INTERVAL_SECONDS)

    app.run(debug=False, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
