"""S3 client for off-host certificate backups."""

import boto3


class S3Client:
    """S3 client for backup archive operations."""

    def __init__(self, region: str = "eu-west-2") -> None:
        """Initialize S3 client.

        Args:
            region: AWS region for S3 client
        """
        self.client = boto3.client("s3", region_name=region)

    def upload_backup(self, bucket_name: str, archive_content: bytes, key: str) -> str:
        """Upload a backup archive to S3 bucket.

        Args:
            bucket_name: S3 bucket name
            archive_content: tar.gz archive bytes
            key: S3 object key

        Returns:
            S3 version ID if versioning enabled, empty string otherwise

        Raises:
            ClientError: If upload fails
        """
        response = self.client.put_object(
            Bucket=bucket_name,
            Key=key,
            Body=archive_content,
            ContentType="application/gzip",
            ServerSideEncryption="AES256",
        )
        return response.get("VersionId", "")

    def get_backup(self, bucket_name: str, key: str) -> bytes:
        """Download a backup archive from S3 bucket.

        Raises:
            ClientError: If download fails
        """
        response = self.client.get_object(Bucket=bucket_name, Key=key)
        return response["Body"].read()
