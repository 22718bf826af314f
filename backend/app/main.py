"""
Main Flask application with configuration, logging, and error handlers.
"""
import os
import json
import logging
from datetime import datetime, timezone
from flask import Flask, jsonify
from dotenv import load_dotenv
from PIL import features

from app.utils.exceptions import ImageOptimizationError

# Load environment variables
load_dotenv()


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class Config:
    """Configuration class to load environment variables."""

    API_KEY = os.getenv('API_KEY')
    FLASK_ENV = os.getenv('FLASK_ENV', 'production')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    MAX_IMAGE_SIZE = int(os.getenv('MAX_IMAGE_SIZE', 10 * 1024 * 1024))  # 10MB default
    MAX_BATCH_SIZE = int(os.getenv('MAX_BATCH_SIZE', 10))
    BATCH_CONCURRENCY = int(os.getenv('BATCH_CONCURRENCY', 4))
    # Room for a full batch plus multipart overhead
    MAX_CONTENT_LENGTH = MAX_IMAGE_SIZE * MAX_BATCH_SIZE + 1024 * 1024

    # Search policy
    RESIZE_THRESHOLD_BYTES = int(os.getenv('RESIZE_THRESHOLD_BYTES', 1024 * 1024))  # 1MB
    MAX_DIMENSION = int(os.getenv('MAX_DIMENSION', 1920))
    EARLY_EXIT_RATIO = float(os.getenv('EARLY_EXIT_RATIO', 0.7))
    FALLBACK_QUALITY = float(os.getenv('FALLBACK_QUALITY', 0.25))
    QUALITY_LEVELS = tuple(map(float, os.getenv('QUALITY_LEVELS', '0.7,0.6,0.5,0.4,0.3,0.25').split(',')))
    RETRY_QUALITY_LEVELS = tuple(map(float, os.getenv('RETRY_QUALITY_LEVELS', '0.5,0.4,0.3').split(',')))


LOG_EXTRA_FIELDS = (
    'endpoint', 'image_name', 'phase', 'quality', 'original_size',
    'converted_size', 'items', 'duration_ms', 'status'
)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_data = {
            'timestamp': utc_timestamp(),
            'level': record.levelname,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add extra fields if present
        for field in LOG_EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(app):
    """Set up JSON logging for the application and the optimizer modules."""
    log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)

    for logger in (app.logger, logging.getLogger('app.utils')):
        # Remove default handlers
        logger.handlers.clear()

        # Create console handler with JSON formatter
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        handler.setLevel(log_level)

        logger.setLevel(log_level)
        logger.addHandler(handler)

        # Prevent propagation to avoid duplicate logs
        logger.propagate = False


def create_app():
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(Config)

    # Set up JSON logging
    setup_logging(app)

    if not Config.API_KEY:
        app.logger.warning('API_KEY not set, optimization endpoints will reject all requests')

    # Register error handlers
    register_error_handlers(app)

    # Register routes
    register_routes(app)

    app.logger.info('Flask application initialized', extra={
        'flask_env': Config.FLASK_ENV,
        'log_level': Config.LOG_LEVEL
    })

    return app


def error_response(error, error_code, message, status_code):
    return jsonify({
        'status': 'error',
        'error': error,
        'error_code': error_code,
        'message': message
    }), status_code


def register_error_handlers(app):
    """Register error handlers for common HTTP status codes."""

    @app.errorhandler(400)
    def bad_request(error):
        """Handle 400 Bad Request errors."""
        app.logger.warning(f'Bad request: {str(error)}')
        message = str(error.description) if hasattr(error, 'description') else 'Invalid request data'
        return error_response('Bad request', 'BAD_REQUEST', message, 400)

    @app.errorhandler(401)
    def unauthorized(error):
        """Handle 401 Unauthorized errors."""
        app.logger.warning(f'Unauthorized access attempt: {str(error)}')
        return error_response('Unauthorized', 'AUTH_FAILED', 'Invalid or missing API key', 401)

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 Not Found errors."""
        app.logger.warning(f'Resource not found: {str(error)}')
        message = str(error.description) if hasattr(error, 'description') else 'Resource not found'
        return error_response('Not found', 'NOT_FOUND', message, 404)

    @app.errorhandler(413)
    def request_entity_too_large(error):
        """Handle 413 Request Entity Too Large errors."""
        app.logger.warning(f'Request too large: {str(error)}')
        return error_response(
            'Request entity too large',
            'IMAGE_TOO_LARGE',
            f'Image exceeds maximum size of {app.config["MAX_IMAGE_SIZE"]} bytes',
            413
        )

    @app.errorhandler(ImageOptimizationError)
    def optimization_failed(error):
        """Handle decode/surface failures for a single uploaded image."""
        app.logger.warning(f'Image optimization failed: {error.message}', extra={
            'status': error.error_code
        })
        return error_response('Unprocessable image', error.error_code, error.message, 422)

    @app.errorhandler(500)
    def internal_server_error(error):
        """Handle 500 Internal Server Error."""
        app.logger.error(f'Internal server error: {str(error)}', exc_info=True)
        return error_response('Internal server error', 'INTERNAL_ERROR', 'An unexpected error occurred', 500)

    @app.errorhandler(503)
    def service_unavailable(error):
        """Handle 503 Service Unavailable errors."""
        app.logger.error(f'Service unavailable: {str(error)}')
        return error_response('Service unavailable', 'SERVICE_UNAVAILABLE', 'Image codec is currently unavailable', 503)


def register_routes(app):
    """Register application routes."""

    # Import and register optimize routes
    from app.routes.optimize import register_optimize_routes
    register_optimize_routes(app)

    @app.route('/health', methods=['GET'])
    def health():
        """
        Health check endpoint that verifies WebP encoding is available.
        Returns 200 if healthy, 503 if Pillow was built without WebP.
        """
        try:
            if not features.check('webp'):
                raise RuntimeError('Pillow was built without WebP support')

            app.logger.info('Health check passed')

            return jsonify({
                'status': 'healthy',
                'timestamp': utc_timestamp()
            }), 200

        except Exception as e:
            app.logger.error(f'Health check failed: {str(e)}', exc_info=True)
            return jsonify({
                'status': 'unhealthy',
                'error': str(e),
                'timestamp': utc_timestamp()
            }), 503


# Create the Flask app instance
app = create_app()


if __name__ == '__main__':
    # For local development only
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=(Config.FLASK_ENV != 'production'))
