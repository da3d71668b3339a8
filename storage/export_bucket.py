"""S3 storage for calendar exports too large to return inline."""
import logging
import uuid

import boto3
from botocore.exceptions import ClientError

from processor.errors import TransportError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    'ics': ('text/calendar; charset=utf-8', 'ics'),
    'google': ('application/json', 'json'),
    'outlook': ('application/json', 'json'),
}


class ExportBucket:
    """Publishes rendered calendars to S3 behind presigned URLs."""

    def __init__(self, bucket_name: str, prefix: str = 'exports/', url_expiry_seconds: int = 3600):
        """
        Initialize the S3 client.

        Args:
            bucket_name: Target bucket
            prefix: Key prefix for exported files
            url_expiry_seconds: Lifetime of the presigned download URL
        """
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.url_expiry_seconds = url_expiry_seconds
        self.s3 = boto3.client('s3')

    def publish(self, body: str, fmt: str) -> str:
        """
        Upload an export and return a presigned download URL.

        Raises:
            TransportError: If the upload fails
        """
        content_type, extension = CONTENT_TYPES.get(fmt, ('text/plain', 'txt'))
        key = f"{self.prefix}{uuid.uuid4().hex}.{extension}"

        try:
            self.s3.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=body.encode('utf-8'),
                ContentType=content_type
            )
            url = self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': key},
                ExpiresIn=self.url_expiry_seconds
            )
        except ClientError as e:
            logger.error(f"Error publishing export to s3://{self.bucket_name}/{key}: {e}")
            raise TransportError(f"Failed to publish export: {e}") from e

        logger.info(f"Published {fmt} export to s3://{self.bucket_name}/{key}")
        return url
