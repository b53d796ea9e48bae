import pytest

from pipeline_config import (
    DEFAULT_CANCEL_MARGIN_MS,
    DEFAULT_MAX_UPLOAD_WORKERS,
    DEFAULT_SCRATCH_DIR,
    DEFAULT_UPLOAD_PREFIX,
    PipelineConfig,
)
from pipeline_errors import ConfigurationError


def test_defaults_with_only_bucket():
    config = PipelineConfig.from_env({'BUCKET_NAME': 'archives'})

    assert config.bucket_name == 'archives'
    assert config.endpoint_url is None
    assert config.region_name is None
    assert config.upload_prefix == DEFAULT_UPLOAD_PREFIX
    assert config.scratch_dir == DEFAULT_SCRATCH_DIR
    assert config.max_upload_workers == DEFAULT_MAX_UPLOAD_WORKERS
    assert config.cancel_margin_ms == DEFAULT_CANCEL_MARGIN_MS
    assert config.log_level == 'INFO'


def test_reads_all_settings():
    config = PipelineConfig.from_env({
        'BUCKET_NAME': 'archives',
        'S3_ENDPOINT_URL': 'http://localhost:9000',
        'AWS_REGION': 'eu-west-1',
        'UPLOAD_PREFIX': 'unzipped/',
        'SCRATCH_DIR': '/var/scratch',
        'MAX_UPLOAD_WORKERS': '8',
        'CANCEL_MARGIN_MS': '0',
        'LOG_LEVEL': 'debug',
    })

    assert config.endpoint_url == 'http://localhost:9000'
    assert config.region_name == 'eu-west-1'
    assert config.upload_prefix == 'unzipped/'
    assert config.scratch_dir == '/var/scratch'
    assert config.max_upload_workers == 8
    assert config.cancel_margin_ms == 0
    assert config.log_level == 'DEBUG'


@pytest.mark.parametrize('environ', [{}, {'BUCKET_NAME': ''}, {'BUCKET_NAME': '   '}])
def test_missing_bucket_is_fatal(environ):
    with pytest.raises(ConfigurationError, match='BUCKET_NAME'):
        PipelineConfig.from_env(environ)


@pytest.mark.parametrize('name, value', [
    ('MAX_UPLOAD_WORKERS', 'many'),
    ('MAX_UPLOAD_WORKERS', '0'),
    ('CANCEL_MARGIN_MS', '-1'),
    ('LOG_LEVEL', 'LOUD'),
])
def test_rejects_bad_settings(name, value):
    with pytest.raises(ConfigurationError, match=name):
        PipelineConfig.from_env({'BUCKET_NAME': 'archives', name: value})


def test_reads_process_environment(monkeypatch):
    monkeypatch.setenv('BUCKET_NAME', 'from-env')
    monkeypatch.delenv('MAX_UPLOAD_WORKERS', raising=False)

    assert PipelineConfig.from_env().bucket_name == 'from-env'
