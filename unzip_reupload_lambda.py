import base64
import binascii
import json
import logging
import threading
import uuid

from blob_store import S3BlobStore
from pipeline_config import PipelineConfig
from pipeline_errors import InvalidRequestError, PipelineError
from reupload_pipeline import resolve_request, run_pipeline

logger = logging.getLogger(__name__)

# Built on the first invocation and reused while the container stays warm
_runtime = None


def lambda_handler(event, context):
    """
    Unzip an archive stored in the bucket and upload its files back as new objects.

    Expects a payload with 'archiveId' (key of the zip in the bucket) and
    'context' (free-form project label, only used for logging and metadata).
    The payload may be the event itself or a JSON string in body / bodyRaw /
    payload. Responds with {'success': True, 'files': [...], 'failed': [...]}
    or {'success': False, 'error': ...} with status 500.
    """
    try:
        config, store = load_runtime()
    except PipelineError as e:
        logger.error('Function error: %s', e.message)
        return build_response(500, {'success': False, 'error': e.message})

    return handle_event(event, context, config, store)


def load_runtime(environ=None):
    """Read configuration and build the S3 store once per container."""
    global _runtime
    if _runtime is None:
        config = PipelineConfig.from_env(environ)
        configure_logging(config.log_level)
        _runtime = (config, S3BlobStore.from_config(config))
    return _runtime


def configure_logging(level):
    root = logging.getLogger()
    # Lambda installs its own handler on the root logger
    if not root.handlers:
        logging.basicConfig(format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    root.setLevel(level)


def handle_event(event, context, config, store):
    """Run one invocation against an explicit config and blob store."""
    invocation_id = getattr(context, 'aws_request_id', None) or uuid.uuid4().hex
    cancel_event = threading.Event()
    deadline_timer = arm_deadline(context, config.cancel_margin_ms, cancel_event)

    try:
        payload = parse_event_payload(event)
        request = resolve_request(payload)
        logger.info(
            'Payload OK: archiveId=%s, context=%s, bucket=%s',
            request.archive_id, request.context, config.bucket_name,
        )
        result = run_pipeline(store, request, config, invocation_id, cancel_event)
    except PipelineError as e:
        logger.error('Function error: %s', e.message)
        return build_response(500, {'success': False, 'error': e.message})
    except Exception as e:
        logger.exception('Unexpected error while processing invocation %s', invocation_id)
        return build_response(500, {'success': False, 'error': str(e)})
    finally:
        if deadline_timer is not None:
            deadline_timer.cancel()

    return build_response(200, {
        'success': True,
        'files': result.succeeded,
        'failed': [{'name': name, 'reason': reason} for name, reason in result.failed],
    })


def parse_event_payload(event):
    """
    Normalize the different ways a payload can reach the function into a dict.

    Checked in order: 'body' (dict, JSON string, or base64 JSON when
    isBase64Encoded is set), 'bodyRaw', 'payload', then the event itself.
    """
    if isinstance(event, (str, bytes)):
        return _decode_json(event, 'event')
    if not isinstance(event, dict):
        raise InvalidRequestError('Event must be a JSON object')

    body = event.get('body')
    if body:
        if isinstance(body, dict):
            return body
        if event.get('isBase64Encoded'):
            try:
                body = base64.b64decode(body, validate=True)
            except (binascii.Error, ValueError):
                raise InvalidRequestError('body is not valid base64')
        return _decode_json(body, 'body')

    for field in ('bodyRaw', 'payload'):
        raw = event.get(field)
        if raw:
            if isinstance(raw, dict):
                return raw
            return _decode_json(raw, field)

    return event


def _decode_json(raw, field):
    try:
        payload = json.loads(raw)
    except (ValueError, TypeError):
        raise InvalidRequestError(f'{field} is not valid JSON')
    if not isinstance(payload, dict):
        raise InvalidRequestError(f'{field} must contain a JSON object')
    return payload


def arm_deadline(context, margin_ms, cancel_event):
    """
    Set cancel_event margin_ms before the Lambda timeout.

    Returns the started timer, or None when the context has no deadline.
    """
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if get_remaining is None:
        return None

    delay_ms = get_remaining() - margin_ms
    if delay_ms <= 0:
        cancel_event.set()
        return None

    timer = threading.Timer(delay_ms / 1000.0, cancel_event.set)
    timer.daemon = True
    timer.start()
    return timer


def build_response(status_code, body):
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body),
    }
