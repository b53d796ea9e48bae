"""S3-backed blob store used by the re-upload pipeline.

The store is constructed explicitly and handed to the pipeline, so tests can
swap in any object with the same two methods (open_download, upload_new).
"""
import logging
import uuid
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pipeline_errors import NotFoundError, TransferError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ('NoSuchKey', 'NotFound', '404')


class S3BlobStore:
    def __init__(self, s3_client, bucket_name, upload_prefix='extracted/'):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.upload_prefix = upload_prefix

    @classmethod
    def from_config(cls, config):
        """Build a store and its boto3 client from a PipelineConfig."""
        s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            region_name=config.region_name,
        )
        return cls(s3_client, config.bucket_name, config.upload_prefix)

    def open_download(self, key):
        """
        Start downloading an object and return its readable body stream.

        Raises NotFoundError when the key is unknown and TransferError for any
        other S3 or transport failure.
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in NOT_FOUND_CODES:
                raise NotFoundError(f'Archive {key} not found in bucket {self.bucket_name}')
            raise TransferError(f'Failed to download {key}: {e}')
        except BotoCoreError as e:
            raise TransferError(f'Failed to download {key}: {e}')
        return response['Body']

    def upload_new(self, fileobj, name, content_type, metadata=None):
        """
        Stream a readable binary file object into a brand-new object and return its key.

        upload_fileobj switches to a multipart transfer for large files. The
        key is generated here (prefix + random uuid) and never derived from the
        file name, so an upload can not overwrite an existing object. The
        original name travels as object metadata. Transfer errors propagate to
        the caller unchanged.
        """
        key = f'{self.upload_prefix}{uuid.uuid4().hex}'

        # S3 user metadata must be ASCII
        object_metadata = {'original-name': quote(name)}
        for meta_key, meta_value in (metadata or {}).items():
            object_metadata[meta_key] = quote(str(meta_value))

        self.s3_client.upload_fileobj(
            fileobj,
            self.bucket_name,
            key,
            ExtraArgs={'ContentType': content_type, 'Metadata': object_metadata},
        )
        logger.debug('Uploaded %s to s3://%s/%s', name, self.bucket_name, key)
        return key
