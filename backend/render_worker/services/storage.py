import json
import os
from pathlib import Path
from typing import Optional

import urllib3
from minio import Minio
from minio.error import S3Error

from render_worker.config import get_settings
from render_worker.logging_config import get_logger


logger = get_logger(__name__)


def video_object_name(job_id: str) -> str:
    return f"videos/{job_id}.mp4"


class StorageService:
    """
    Service for object storage operations using MinIO.

    Rendered videos live in a public-read bucket; URLs handed back to callers
    are built from the public endpoint, not the internal one.
    """

    def __init__(self, client: Optional[Minio] = None):
        self.settings = get_settings()
        cfg = self.settings.minio

        if client is None:
            # Extract region from endpoint if it's AWS S3
            # e.g., s3.us-east-2.amazonaws.com -> us-east-2
            region = None
            if "amazonaws.com" in cfg.endpoint:
                parts = cfg.endpoint.split(".")
                if len(parts) >= 3 and parts[0] == "s3":
                    region = parts[1]
                    logger.info("s3_region_detected", region=region)

            timeout = self.settings.publish.request_timeout_seconds
            http_client = urllib3.PoolManager(
                timeout=urllib3.Timeout(connect=timeout, read=timeout),
                # Retries are owned by the publisher
                retries=urllib3.Retry(total=0),
            )
            client = Minio(
                cfg.endpoint,
                access_key=cfg.access_key,
                secret_key=cfg.secret_key,
                secure=cfg.secure,
                region=region,
                http_client=http_client,
            )

        self.client = client
        self.bucket = cfg.bucket_videos
        self.public_endpoint = cfg.public_endpoint
        self.secure = cfg.secure

    def ensure_bucket(self) -> bool:
        """
        Create the videos bucket if missing and make it publicly readable.

        Returns False instead of raising so the app can start and report
        storage as unhealthy.
        """
        try:
            try:
                list(self.client.list_objects(self.bucket, max_keys=1))
                logger.info("bucket_accessible", bucket=self.bucket)
            except S3Error as list_err:
                if list_err.code != "NoSuchBucket":
                    raise
                self.client.make_bucket(self.bucket)
                logger.info("bucket_created", bucket=self.bucket)

            policy = {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"AWS": ["*"]},
                        "Action": ["s3:GetObject"],
                        "Resource": [f"arn:aws:s3:::{self.bucket}/*"],
                    }
                ],
            }
            try:
                self.client.set_bucket_policy(self.bucket, json.dumps(policy))
            except Exception as e:
                logger.warning("bucket_policy_not_set", bucket=self.bucket, error=str(e))
            return True
        except Exception as e:
            logger.warning("storage_init_failed", endpoint=self.settings.minio.endpoint, error=str(e))
            return False

    def upload_file(self, object_name: str, file_path: str, content_type: Optional[str] = None) -> str:
        """
        Upload a local file to the videos bucket.

        Returns:
            Object name in storage
        """
        if content_type is None:
            content_type = self._guess_content_type(file_path)
        self.client.fput_object(self.bucket, object_name, file_path, content_type=content_type)
        return object_name

    def download_file(self, object_name: str, file_path: str) -> str:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        self.client.fget_object(self.bucket, object_name, file_path)
        return file_path

    def object_exists(self, object_name: str) -> bool:
        try:
            self.client.stat_object(self.bucket, object_name)
            return True
        except S3Error:
            return False

    def public_url(self, object_name: str) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.public_endpoint}/{self.bucket}/{object_name}"

    def _guess_content_type(self, file_path: str) -> str:
        ext = Path(file_path).suffix.lower()
        content_types = {
            ".mp4": "video/mp4",
            ".webm": "video/webm",
            ".json": "application/json",
        }
        return content_types.get(ext, "application/octet-stream")

    # Convenience methods for rendered videos

    def upload_video(self, job_id: str, file_path: str) -> str:
        """Upload a rendered video and return its public URL."""
        object_name = self.upload_file(video_object_name(job_id), file_path, content_type="video/mp4")
        return self.public_url(object_name)

    def video_exists(self, job_id: str) -> bool:
        return self.object_exists(video_object_name(job_id))

    def download_video(self, job_id: str, file_path: str) -> str:
        return self.download_file(video_object_name(job_id), file_path)

    def video_url(self, job_id: str) -> str:
        return self.public_url(video_object_name(job_id))
