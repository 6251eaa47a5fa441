from abc import ABC, abstractmethod
import hashlib
import hmac
import logging
import os
import time
from typing import Optional
from urllib.parse import quote
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from foldly.config import settings
from foldly.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageGateway(ABC):
    """Opaque blob store. Paths are per-file keys; no folder semantics."""

    def generate_storage_key(self, owner_id: str, container_id: str, file_id: str, filename: str) -> str:
        """Key layout: <owner>/<link or folder>/<file>/<name>"""
        safe_name = filename.replace("/", "_").replace("\\", "_")
        return f"users/{owner_id}/{container_id}/{file_id}/{safe_name}"

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def get(self, path: str) -> bytes:
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete an object. A missing object counts as deleted."""
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    def signed_url(self, path: str, ttl: Optional[int] = None, filename: Optional[str] = None) -> str:
        pass


class B2StorageService(StorageGateway):
    def __init__(self):
        self.key_id = settings.B2_KEY_ID
        self.app_key = settings.B2_APP_KEY
        self.bucket = settings.B2_BUCKET_NAME
        self.endpoint_url = settings.B2_ENDPOINT_URL or ""

        if not self.key_id or not self.app_key:
            logger.warning("B2 credentials not set. Storage calls will fail.")

        # Endpoint format: https://s3.us-west-004.backblazeb2.com
        self.region_name = "us-west-004"
        if "us-east-005" in self.endpoint_url:
            self.region_name = "us-east-005"

        self.s3_client = boto3.client(
            's3',
            endpoint_url=self.endpoint_url or None,
            aws_access_key_id=self.key_id,
            aws_secret_access_key=self.app_key,
            region_name=self.region_name,
            config=Config(signature_version='s3v4', retries={'max_attempts': 3})
        )

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        extra = {'ServerSideEncryption': 'AES256'}
        if content_type:
            extra['ContentType'] = content_type
        try:
            self.s3_client.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(f"Failed to upload object: {e}", {"path": path})

    def get(self, path: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=path)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(f"Failed to read object: {e}", {"path": path})

    def delete(self, path: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return
            raise StorageUnavailable(f"Failed to delete object: {e}", {"path": path})
        except BotoCoreError as e:
            raise StorageUnavailable(f"Failed to delete object: {e}", {"path": path})

    def exists(self, path: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return False
            raise StorageUnavailable(f"Failed to stat object: {e}", {"path": path})
        except BotoCoreError as e:
            raise StorageUnavailable(f"Failed to stat object: {e}", {"path": path})

    def signed_url(self, path: str, ttl: Optional[int] = None, filename: Optional[str] = None) -> str:
        params = {'Bucket': self.bucket, 'Key': path}
        if filename:
            params['ResponseContentDisposition'] = f'attachment; filename="{filename}"'
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params=params,
                ExpiresIn=ttl or settings.S3_PRESIGNED_URL_EXPIRY
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(f"Failed to generate download URL: {e}", {"path": path})


class LocalStorageService(StorageGateway):
    """Filesystem backend for development and tests."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.LOCAL_STORAGE_ROOT)

    def _abs(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise StorageUnavailable("Storage path escapes root", {"path": path})
        return full

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        full = self._abs(path)
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageUnavailable(f"Failed to write object: {e}", {"path": path})

    def get(self, path: str) -> bytes:
        try:
            with open(self._abs(path), "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageUnavailable(f"Failed to read object: {e}", {"path": path})

    def delete(self, path: str) -> None:
        full = self._abs(path)
        try:
            os.remove(full)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageUnavailable(f"Failed to delete object: {e}", {"path": path})

    def exists(self, path: str) -> bool:
        return os.path.isfile(self._abs(path))

    @staticmethod
    def _signature(path: str, expires: int) -> str:
        return hmac.new(settings.SECRET_KEY.encode(), f"{path}:{expires}".encode(), hashlib.sha256).hexdigest()

    def signed_url(self, path: str, ttl: Optional[int] = None, filename: Optional[str] = None) -> str:
        expires = int(time.time()) + (ttl or settings.S3_PRESIGNED_URL_EXPIRY)
        return (
            f"{settings.API_V1_PREFIX}/files/download/proxy"
            f"?key={quote(path)}&expires={expires}&sig={self._signature(path, expires)}"
        )

    def verify_signature(self, path: str, expires: int, sig: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(path, expires), sig or "")


_storage_service: Optional[StorageGateway] = None


def get_storage_service() -> StorageGateway:
    global _storage_service
    if _storage_service is None:
        if settings.STORAGE_BACKEND == "local":
            _storage_service = LocalStorageService()
        else:
            _storage_service = B2StorageService()
    return _storage_service
