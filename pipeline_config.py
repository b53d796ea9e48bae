import logging
import os
from dataclasses import dataclass
from typing import Optional

from pipeline_errors import ConfigurationError

# only /tmp/ is writable in Lambda
DEFAULT_SCRATCH_DIR = '/tmp'
DEFAULT_UPLOAD_PREFIX = 'extracted/'
DEFAULT_MAX_UPLOAD_WORKERS = 4
DEFAULT_CANCEL_MARGIN_MS = 10000


@dataclass(frozen=True)
class PipelineConfig:
    bucket_name: str
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    upload_prefix: str = DEFAULT_UPLOAD_PREFIX
    scratch_dir: str = DEFAULT_SCRATCH_DIR
    max_upload_workers: int = DEFAULT_MAX_UPLOAD_WORKERS
    cancel_margin_ms: int = DEFAULT_CANCEL_MARGIN_MS
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ=None):
        """
        Build the configuration from environment variables.

        BUCKET_NAME is required. Credentials are not read here; boto3 picks up
        AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY or the Lambda execution role.
        """
        if environ is None:
            environ = os.environ

        bucket_name = environ.get('BUCKET_NAME', '').strip()
        if not bucket_name:
            raise ConfigurationError('Missing BUCKET_NAME env var')

        return cls(
            bucket_name=bucket_name,
            endpoint_url=environ.get('S3_ENDPOINT_URL') or None,
            region_name=environ.get('AWS_REGION') or None,
            upload_prefix=environ.get('UPLOAD_PREFIX', DEFAULT_UPLOAD_PREFIX),
            scratch_dir=environ.get('SCRATCH_DIR') or DEFAULT_SCRATCH_DIR,
            max_upload_workers=_int_setting(
                environ, 'MAX_UPLOAD_WORKERS', DEFAULT_MAX_UPLOAD_WORKERS, minimum=1),
            cancel_margin_ms=_int_setting(
                environ, 'CANCEL_MARGIN_MS', DEFAULT_CANCEL_MARGIN_MS, minimum=0),
            log_level=_log_level_setting(environ),
        )


def _int_setting(environ, name, default, minimum):
    raw = environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f'{name} must be an integer, got {raw!r}')
    if value < minimum:
        raise ConfigurationError(f'{name} must be >= {minimum}, got {value}')
    return value


def _log_level_setting(environ):
    level = (environ.get('LOG_LEVEL') or 'INFO').strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigurationError(f'LOG_LEVEL {level!r} is not a logging level')
    return level
