"""
Analyze API endpoints: batch image upload and liveness probe
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from .aggregator import summarize
from .exceptions import NoFilesProvided
from .ingest import BufferedBody, ByteSource, IngestLimits, StreamIngester, StreamedBody
from .orchestrator import BatchOrchestrator
from .response_builder import build_envelope, map_error, new_batch_meta

logger = logging.getLogger(__name__)

# Hosts that consume the request body before the app runs may hand it over here
RAW_BODY_ENVIRON_KEY = 'batch_analyzer.raw_body'
EXTENSION_KEY = 'batch_analyzer'

# Create Blueprint for analyze API
analyze_api = Blueprint('analyze_api', __name__)


@dataclass
class AnalyzerServices:
    """Per-app collaborators, stored in ``app.extensions``"""
    config: object
    limits: IngestLimits
    orchestrator: BatchOrchestrator


def request_transport(cfg) -> ByteSource:
    """Pick how the current request body is read"""
    raw_body = request.environ.get(RAW_BODY_ENVIRON_KEY)
    if raw_body is not None:
        return BufferedBody(raw_body)
    if cfg.buffer_request_body:
        return BufferedBody(request.get_data(cache=False))
    return StreamedBody(request.stream, chunk_size=cfg.stream_chunk_size)


@analyze_api.route('/health', methods=['GET'])
def health():
    """Lightweight liveness probe that does not call the vision service"""
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
    })


@analyze_api.route('/analyze', methods=['POST'])
def analyze():
    """Analyse a batch of images sent as repeated multipart 'image' fields"""
    services: AnalyzerServices = current_app.extensions[EXTENSION_KEY]

    try:
        files = []
        # Non-multipart bodies bypass ingestion and end up as "no files"
        if request.mimetype == 'multipart/form-data':
            ingester = StreamIngester(services.limits)
            files = ingester.ingest(request_transport(services.config), request.content_type)

        if not files:
            raise NoFilesProvided()

        meta = new_batch_meta(len(files))
        logger.info(f"Batch {meta.batch_id}: analysing {len(files)} image(s)")

        outcomes = asyncio.run(services.orchestrator.run(files))
        envelope = build_envelope(meta, outcomes, summarize(outcomes))

        return jsonify(envelope.to_dict())

    except Exception as e:
        status, body = map_error(e)
        if status >= 500:
            logger.exception(f"Error in analyze endpoint: {e}")
        else:
            logger.warning(f"Analyze request rejected ({status}): {body['error']}")
        return jsonify(body), status
