"""
Flask application for batch image analysis (receipts/tickets and vehicles)
"""
import logging
import os
import sys
from typing import Optional

from flask import Flask, jsonify

from .analyze_api import EXTENSION_KEY, AnalyzerServices, analyze_api
from .analyzer_config import AnalyzerConfig, config
from .ingest import IngestLimits
from .orchestrator import BatchOrchestrator
from .response_builder import map_error
from .vision_client import create_vision_client

logger = logging.getLogger(__name__)


def configure_logging(cfg: AnalyzerConfig):
    """Log to stderr and to LOG_DIR/analyzer_app.log"""
    cfg.create_directories()
    level = logging.DEBUG if cfg.enable_debug_logging else getattr(
        logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(cfg.log_dir, 'analyzer_app.log')),
            logging.StreamHandler()
        ]
    )


def create_app(cfg: Optional[AnalyzerConfig] = None, vision_client=None) -> Flask:
    """Create and configure the Flask application.

    ``vision_client`` is any object with an async ``analyze(bytes, media_type)``;
    by default one is built from the configured backend.
    """
    cfg = cfg or config
    configure_logging(cfg)

    for warning in cfg.validate_configuration():
        logger.warning(f"Configuration warning: {warning}")

    app = Flask(__name__)
    app.config.update({
        'MAX_CONTENT_LENGTH': cfg.max_content_length,
    })
    app.json.sort_keys = False

    if vision_client is None:
        vision_client = create_vision_client(cfg)

    app.extensions[EXTENSION_KEY] = AnalyzerServices(
        config=cfg,
        limits=IngestLimits.from_config(cfg),
        orchestrator=BatchOrchestrator.from_config(vision_client.analyze, cfg),
    )

    app.register_blueprint(analyze_api)

    # Error handlers: always JSON, never an HTML error page
    @app.errorhandler(404)
    @app.errorhandler(405)
    def client_error(error):
        status, body = map_error(error)
        return jsonify(body), status

    @app.errorhandler(413)
    def file_too_large(error):
        return jsonify({
            'error': 'Upload too large',
            'details': f'Maximum request size: {cfg.max_content_length // (1024 * 1024)}MB'
        }), 413

    @app.errorhandler(500)
    def server_error(error):
        logger.error(f"Server error: {error}")
        status, body = map_error(getattr(error, 'original_exception', None) or error)
        return jsonify(body), 500

    logger.info(
        f"Analyzer app ready (backend={cfg.api_backend}, max_files={cfg.max_files}, "
        f"max_file_size={cfg.max_file_size // (1024 * 1024)}MB)")
    return app


if __name__ == '__main__':
    """Run the analyzer application"""
    import argparse

    parser = argparse.ArgumentParser(
        description="Batch Image Analysis Application")
    parser.add_argument('--host', default='127.0.0.1',
                        help='Host to bind to (use 0.0.0.0 for production)')
    parser.add_argument('--port', type=int, default=5000,
                        help='Port to bind to')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug mode')

    args = parser.parse_args()
    analyzer_app = create_app()

    logger.info("=" * 80)
    logger.info("BATCH IMAGE ANALYSIS APPLICATION")
    logger.info("=" * 80)
    logger.info(f"Host: {args.host}")
    logger.info(f"Port: {args.port}")
    logger.info(f"Backend: {config.api_backend}")
    logger.info(f"Max Files: {config.max_files}")
    logger.info("=" * 80)

    try:
        analyzer_app.run(
            host=args.host,
            port=args.port,
            debug=args.debug,
            threaded=True
        )
    except KeyboardInterrupt:
        logger.info("Application stopped by user")
    except Exception as e:
        logger.error(f"Application error: {e}")
        sys.exit(1)
