"""
Batch re-upload pipeline.

Takes a zip archive that already lives in the bucket and stores every file
inside it as a new object in the same bucket:

1. resolve_request  - validate the payload (archiveId, context)
2. stage_archive    - download the archive into the invocation's scratch workspace
3. extract_archive  - unzip into the workspace and list the leaf files
4. upload_all       - upload each file as a new object, one outcome per file
5. aggregate        - split outcomes into uploaded keys and failures

Stages 2 and 3 abort the invocation on error. Stage 4 never does: a failed
upload becomes a failure record and the remaining files are still attempted.
"""
import logging
import mimetypes
import os
import re
import shutil
import tempfile
import threading
import uuid
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from botocore.exceptions import BotoCoreError

from pipeline_errors import (
    CorruptArchiveError,
    ExtractionIOError,
    InvalidRequestError,
    TransferError,
)

logger = logging.getLogger(__name__)

FALLBACK_CONTENT_TYPE = 'application/octet-stream'
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
CANCELLED_REASON = 'upload cancelled'

# mimetypes reports compression as an encoding, not as the type
ENCODING_CONTENT_TYPES = {
    'gzip': 'application/gzip',
    'bzip2': 'application/x-bzip2',
    'xz': 'application/x-xz',
    'compress': 'application/x-compress',
    'br': 'application/x-brotli',
}

# fileId / projectSlug are the field names older callers send
ARCHIVE_ID_FIELDS = ('archiveId', 'fileId')
CONTEXT_FIELDS = ('context', 'projectSlug')


@dataclass(frozen=True)
class UploadRequest:
    archive_id: str
    context: str


@dataclass(frozen=True)
class StagedArchive:
    archive_id: str
    path: str
    size_bytes: int


@dataclass(frozen=True)
class ExtractedEntry:
    relative_name: str
    local_path: str
    size_bytes: int


@dataclass(frozen=True)
class UploadSuccess:
    entry_name: str
    remote_id: str
    content_type: str = FALLBACK_CONTENT_TYPE


@dataclass(frozen=True)
class UploadFailure:
    entry_name: str
    reason: str


@dataclass
class PipelineResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    archive_id: Optional[str] = None
    context: Optional[str] = None

    @property
    def total(self):
        return len(self.succeeded) + len(self.failed)


def resolve_request(payload):
    """Turn a deserialized payload into an UploadRequest or raise InvalidRequestError."""
    if not isinstance(payload, dict):
        raise InvalidRequestError('Payload must be a JSON object')

    archive_id = _first_field(payload, ARCHIVE_ID_FIELDS)
    context = _first_field(payload, CONTEXT_FIELDS)

    if not _is_filled(archive_id) or not _is_filled(context):
        raise InvalidRequestError('Missing archiveId or context in payload')

    return UploadRequest(archive_id=archive_id.strip(), context=context.strip())


def _first_field(payload, names):
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return None


def _is_filled(value):
    return isinstance(value, str) and value.strip() != ''


def _safe_name(value):
    """Flatten an arbitrary identifier into a single path component."""
    cleaned = re.sub(r'[^A-Za-z0-9._-]+', '_', value).strip('._')
    return cleaned or 'archive'


@contextmanager
def scratch_workspace(scratch_dir, invocation_id):
    """
    Create a scratch directory owned by one invocation and remove it on exit.

    The directory name combines the invocation id with a random suffix, so two
    invocations never share a path even when they handle the same archive.
    """
    try:
        workspace = tempfile.mkdtemp(prefix=f'unzip-{_safe_name(invocation_id)}-', dir=scratch_dir)
    except OSError as e:
        raise TransferError(f'Could not create scratch directory in {scratch_dir}: {e}')

    try:
        yield workspace
    finally:
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning('Failed to remove scratch directory %s: %s', workspace, e)


def stage_archive(body, archive_id, workspace):
    """
    Copy an opened archive download into the workspace and return a StagedArchive.

    body is the stream returned by store.open_download; the caller closes it.
    A partially written file is removed before TransferError is raised.
    """
    archive_dir = os.path.join(workspace, 'archive')
    path = os.path.join(archive_dir, _safe_name(archive_id) + '.zip')
    try:
        os.makedirs(archive_dir, exist_ok=True)
        with open(path, 'wb') as f:
            shutil.copyfileobj(body, f, DOWNLOAD_CHUNK_SIZE)
            size = f.tell()
    except (BotoCoreError, OSError) as e:
        if os.path.exists(path):
            os.remove(path)
        raise TransferError(f'Failed to stage archive {archive_id}: {e}')

    logger.info('Staged archive %s (%d bytes)', archive_id, size)
    return StagedArchive(archive_id=archive_id, path=path, size_bytes=size)


def extract_archive(staged, workspace):
    """
    Unzip a staged archive into <workspace>/extracted and list its files.

    Only files are returned, sorted by their path inside the archive.
    Directories are walked but not listed. Member names containing '..' or an
    absolute path are sanitized by zipfile and stay inside the directory.
    """
    target = os.path.join(workspace, 'extracted')
    try:
        os.makedirs(target)
        with zipfile.ZipFile(staged.path) as zf:
            zf.extractall(target)
    except zipfile.BadZipFile as e:
        raise CorruptArchiveError(f'{staged.archive_id} is not a valid zip archive: {e}')
    except (EOFError, zlib.error, NotImplementedError, RuntimeError) as e:
        # truncated data, bad deflate stream, unsupported compression, encryption
        raise CorruptArchiveError(f'Could not unpack {staged.archive_id}: {e}')
    except (NotADirectoryError, IsADirectoryError, FileExistsError) as e:
        # members that clash with each other, e.g. a file 'a' and a member 'a/b'
        raise CorruptArchiveError(f'Conflicting member paths in {staged.archive_id}: {e}')
    except OSError as e:
        raise ExtractionIOError(f'Failed to write extracted files for {staged.archive_id}: {e}')

    entries = []
    try:
        for dirpath, _dirnames, filenames in os.walk(target):
            for filename in filenames:
                local_path = os.path.join(dirpath, filename)
                relative_name = os.path.relpath(local_path, target).replace(os.sep, '/')
                entries.append(ExtractedEntry(
                    relative_name=relative_name,
                    local_path=local_path,
                    size_bytes=os.path.getsize(local_path),
                ))
    except OSError as e:
        raise ExtractionIOError(f'Failed to list extracted files for {staged.archive_id}: {e}')

    entries.sort(key=lambda entry: entry.relative_name)
    return entries


def infer_content_type(name):
    """
    Guess a MIME type from the file extension, falling back to octet-stream.

    Compressed files are typed by their compression, so 'data.csv.gz' is
    application/gzip rather than text/csv.
    """
    content_type, encoding = mimetypes.guess_type(name)
    if encoding is not None:
        return ENCODING_CONTENT_TYPES.get(encoding, FALLBACK_CONTENT_TYPE)
    return content_type or FALLBACK_CONTENT_TYPE


def upload_all(store, entries, max_workers=1, cancel_event=None, metadata=None):
    """
    Upload every entry as a new object and return one outcome per entry.

    Outcomes are in the same order as entries. An exception while uploading
    one entry becomes an UploadFailure for that entry only. Once cancel_event
    is set, entries that have not started yet are reported as cancelled while
    uploads already running are left to finish.
    """
    if cancel_event is None:
        cancel_event = threading.Event()

    def upload_one(entry):
        if cancel_event.is_set():
            return UploadFailure(entry_name=entry.relative_name, reason=CANCELLED_REASON)
        content_type = infer_content_type(entry.relative_name)
        try:
            with open(entry.local_path, 'rb') as f:
                remote_id = store.upload_new(f, entry.relative_name, content_type, metadata)
        except Exception as e:
            logger.error('Upload failed for %s: %s', entry.relative_name, e)
            return UploadFailure(entry_name=entry.relative_name, reason=f'{type(e).__name__}: {e}')
        logger.info('Uploaded OK: %s -> %s (%s)', entry.relative_name, remote_id, content_type)
        return UploadSuccess(entry_name=entry.relative_name, remote_id=remote_id, content_type=content_type)

    if max_workers <= 1 or len(entries) <= 1:
        return [upload_one(entry) for entry in entries]

    with ThreadPoolExecutor(max_workers=min(max_workers, len(entries))) as executor:
        # map() yields results in submission order
        return list(executor.map(upload_one, entries))


def aggregate(outcomes, archive_id=None, context=None):
    """Split outcomes into uploaded keys and (name, reason) failures, keeping order."""
    result = PipelineResult(archive_id=archive_id, context=context)
    for outcome in outcomes:
        if isinstance(outcome, UploadSuccess):
            result.succeeded.append(outcome.remote_id)
        else:
            result.failed.append((outcome.entry_name, outcome.reason))
    return result


def run_pipeline(store, request, config, invocation_id=None, cancel_event=None):
    """
    Run stage -> extract -> upload -> aggregate for one resolved request.

    NotFoundError, TransferError, CorruptArchiveError and ExtractionIOError
    propagate to the caller. The scratch workspace is only created once the
    download has started, and is removed on every path.
    """
    if invocation_id is None:
        invocation_id = uuid.uuid4().hex

    logger.info('Downloading archive %s (context=%s)', request.archive_id, request.context)
    body = store.open_download(request.archive_id)
    try:
        with scratch_workspace(config.scratch_dir, invocation_id) as workspace:
            staged = stage_archive(body, request.archive_id, workspace)

            logger.info('Extracting %s', request.archive_id)
            entries = extract_archive(staged, workspace)
            logger.info('Files extracted (count): %d', len(entries))

            outcomes = upload_all(
                store,
                entries,
                max_workers=config.max_upload_workers,
                cancel_event=cancel_event,
                metadata={'context': request.context, 'source-archive': request.archive_id},
            )
    finally:
        body.close()

    result = aggregate(outcomes, archive_id=request.archive_id, context=request.context)
    logger.info(
        'Uploaded %d/%d files from %s (context=%s)',
        len(result.succeeded), result.total, result.archive_id, result.context,
    )
    return result
