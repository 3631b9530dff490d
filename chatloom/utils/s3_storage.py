"""
Amazon S3 wrapper for per-chat batch input and output files.
"""

from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .logging_config import get_logger

logger = get_logger(__name__)


class ObjectStorageError(Exception):
    """Custom exception for object storage errors."""
    pass


class S3Storage:
    """Chat-scoped object storage on Amazon S3."""

    def __init__(self, config: S3Config, client=None):
        """
        Initialize S3 storage.

        Args:
            config: S3Config instance
            client: boto3 S3 client, created from config if None
        """
        self.config = config
        self.s3 = client or boto3.client('s3', region_name=config.region)
        logger.info(f'Initialized S3 storage with bucket prefix: {config.bucket_prefix}')

    def bucket_name(self, chat_id: int) -> str:
        # Group chat ids are negative, bucket names only allow [a-z0-9.-]
        return f'{self.config.bucket_prefix}-chat-{str(chat_id).replace("-", "n")}'.lower()

    def uri(self, chat_id: int, key: str) -> str:
        return f's3://{self.bucket_name(chat_id)}/{key}'

    def ensure_bucket(self, chat_id: int) -> str:
        """Create the chat bucket if it does not exist yet.

        Returns:
            Bucket name
        """
        bucket = self.bucket_name(chat_id)
        try:
            self.s3.head_bucket(Bucket=bucket)
            return bucket
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') not in ('404', 'NoSuchBucket', 'NotFound'):
                logger.error(f'Error checking bucket {bucket}: {e}')
                raise ObjectStorageError(f'Failed to check bucket: {e}')
        except BotoCoreError as e:
            raise ObjectStorageError(f'Failed to check bucket: {e}')

        try:
            params = {'Bucket': bucket}
            if self.config.region != 'us-east-1':
                params['CreateBucketConfiguration'] = {'LocationConstraint': self.config.region}
            self.s3.create_bucket(**params)
            self.s3.put_public_access_block(Bucket=bucket,
                                            PublicAccessBlockConfiguration={
                                                'BlockPublicAcls': True,
                                                'IgnorePublicAcls': True,
                                                'BlockPublicPolicy': True,
                                                'RestrictPublicBuckets': True
                                            })
            logger.info(f'Created bucket {bucket}')
            return bucket
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error creating bucket {bucket}: {e}')
            raise ObjectStorageError(f'Failed to create bucket: {e}')

    def put_text(self, chat_id: int, key: str, body: str, content_type: str = 'application/jsonl') -> str:
        """Upload a text object.

        Returns:
            s3:// URI of the object
        """
        bucket = self.ensure_bucket(chat_id)
        try:
            self.s3.put_object(Bucket=bucket, Key=key, Body=body.encode('utf-8'), ContentType=content_type)
            logger.debug(f'Uploaded {key} to {bucket} ({len(body)} chars)')
            return self.uri(chat_id, key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error uploading {key} to {bucket}: {e}')
            raise ObjectStorageError(f'Failed to upload object: {e}')

    def get_text(self, chat_id: int, key: str) -> str:
        bucket = self.bucket_name(chat_id)
        try:
            response = self.s3.get_object(Bucket=bucket, Key=key)
            return response['Body'].read().decode('utf-8')
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error downloading {key} from {bucket}: {e}')
            raise ObjectStorageError(f'Failed to download object: {e}')

    def list_keys(self, chat_id: int, prefix: str, suffix: Optional[str] = None) -> List[str]:
        """List object keys under a prefix, optionally filtered by suffix."""
        bucket = self.bucket_name(chat_id)
        keys: List[str] = []
        try:
            paginator = self.s3.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get('Contents', []):
                    if suffix is None or item['Key'].endswith(suffix):
                        keys.append(item['Key'])
            return keys
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error listing {prefix} in {bucket}: {e}')
            raise ObjectStorageError(f'Failed to list objects: {e}')

    def delete_keys(self, chat_id: int, keys: List[str]) -> int:
        """Delete objects, logging but tolerating individual failures.

        Returns:
            Number of deleted objects
        """
        bucket = self.bucket_name(chat_id)
        deleted = 0
        for key in keys:
            try:
                self.s3.delete_object(Bucket=bucket, Key=key)
                deleted += 1
            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Failed to delete {key} from {bucket}: {e}')
        return deleted

    def health_check(self) -> bool:
        try:
            self.s3.list_buckets()
            return True
        except Exception as e:
            logger.error(f'S3 health check failed: {e}')
            return False
