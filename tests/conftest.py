import io
import os
import threading
import uuid
import zipfile

import pytest

from pipeline_config import PipelineConfig
from pipeline_errors import NotFoundError


class FakeBlobStore:
    """In-memory stand-in for S3BlobStore."""

    def __init__(self, objects=None, fail_names=()):
        self.objects = dict(objects or {})
        self.fail_names = set(fail_names)
        self.downloads = []
        self.uploads = []
        self._lock = threading.Lock()

    @property
    def calls(self):
        return len(self.downloads) + len(self.uploads)

    def open_download(self, key):
        self.downloads.append(key)
        if key not in self.objects:
            raise NotFoundError(f'Archive {key} not found in bucket test-bucket')
        return io.BytesIO(self.objects[key])

    def upload_new(self, fileobj, name, content_type, metadata=None):
        if name in self.fail_names:
            raise ConnectionError(f'simulated transient error for {name}')
        key = f'extracted/{uuid.uuid4().hex}'
        with self._lock:
            self.uploads.append({
                'key': key,
                'name': name,
                'body': fileobj.read(),
                'content_type': content_type,
                'metadata': metadata,
            })
        return key


class FakeLambdaContext:
    def __init__(self, request_id='req-1', remaining_ms=300000):
        self.aws_request_id = request_id
        self._remaining_ms = remaining_ms

    def get_remaining_time_in_millis(self):
        return self._remaining_ms


def build_zip(files, directories=()):
    """Return zip bytes holding files ({name: bytes}) and empty directories."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        for directory in directories:
            zf.writestr(directory.rstrip('/') + '/', b'')
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / 'scratch'
    path.mkdir()
    return str(path)


@pytest.fixture
def config(scratch_dir):
    return PipelineConfig(bucket_name='test-bucket', scratch_dir=scratch_dir, max_upload_workers=1)


@pytest.fixture
def sample_zip():
    return build_zip({
        'report.json': b'{"ok": true}',
        'notes/readme.txt': b'hello',
        'data.unknownext': b'\x00\x01\x02',
    }, directories=['notes', 'empty'])


def scratch_contents(scratch_dir):
    return os.listdir(scratch_dir)
