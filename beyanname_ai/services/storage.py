import abc
import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

from beyanname_ai.core.config import Settings, settings

logger = logging.getLogger(__name__)

ARTIFACT_CONTENT_TYPE = "application/pdf"


class ArtifactNotFoundError(LookupError):
    """Raised when a stored artifact reference no longer resolves."""


def artifact_key(owner_id: str, job_id: str) -> str:
    """Storage file stem for one job. Distinct (owner, job) pairs never share a key."""
    return hashlib.sha256(f"{owner_id}\0{job_id}".encode("utf-8")).hexdigest()


class StorageProvider(abc.ABC):
    """
    Abstract base class for rendered artifact storage (Local, S3).
    """

    @abc.abstractmethod
    def save_artifact(self, data: bytes, owner_id: str, job_id: str) -> str:
        """
        Store PDF bytes and return the reference kept in ``artifact_url``.
        Saving the same job twice overwrites its previous artifact.
        """

    @abc.abstractmethod
    def get_absolute_path(self, artifact_ref: str) -> str:
        """
        Local path of the artifact, for streaming.
        For S3 this downloads into a local cache first.
        """

    def presigned_url(self, artifact_ref: str) -> Optional[str]:
        """Direct download URL, or None when the backend can only stream."""
        return None


class LocalStorageProvider(StorageProvider):
    """
    Stores artifacts on the local filesystem.
    Suitable for development or single-server deployment.
    """
    def __init__(self, base_dir: str = "artifacts"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def save_artifact(self, data: bytes, owner_id: str, job_id: str) -> str:
        target_path = self.base_dir / f"{artifact_key(owner_id, job_id)}.pdf"
        # Write then rename so readers never see a half-written PDF
        tmp_path = target_path.with_suffix(".pdf.tmp")
        with open(tmp_path, "wb") as buffer:
            buffer.write(data)
        os.replace(tmp_path, target_path)
        return str(target_path)

    def get_absolute_path(self, artifact_ref: str) -> str:
        # In local storage, the ref is the path
        path = os.path.abspath(artifact_ref)
        if not os.path.exists(path):
            raise ArtifactNotFoundError(artifact_ref)
        return path


class S3StorageProvider(StorageProvider):
    """
    Stores artifacts in AWS S3.
    Requires: boto3
    """
    def __init__(self, config: Settings = settings):
        try:
            import boto3
        except ImportError:
            raise ImportError("boto3 is required for S3StorageProvider. pip install boto3")
        self.s3 = boto3.client(
            "s3",
            aws_access_key_id=config.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY or None,
            region_name=config.AWS_REGION,
        )
        self.bucket = config.AWS_BUCKET_NAME
        self.url_ttl = config.ARTIFACT_URL_TTL_SECONDS

    def save_artifact(self, data: bytes, owner_id: str, job_id: str) -> str:
        key = f"artifacts/{artifact_key(owner_id, job_id)}.pdf"
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=ARTIFACT_CONTENT_TYPE)
        except Exception as e:
            logger.error(f"S3 upload of {key} failed: {e}")
            raise RuntimeError(f"S3 Upload failed: {e}") from e
        return key

    def get_absolute_path(self, artifact_ref: str) -> str:
        local_cache_dir = Path("temp_cache")
        local_cache_dir.mkdir(exist_ok=True)
        local_path = local_cache_dir / os.path.basename(artifact_ref)

        if not local_path.exists():
            try:
                self.s3.download_file(self.bucket, artifact_ref, str(local_path))
            except Exception as e:
                raise ArtifactNotFoundError(f"S3 Download failed: {e}") from e
        return str(local_path.absolute())

    def presigned_url(self, artifact_ref: str) -> Optional[str]:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": artifact_ref},
            ExpiresIn=self.url_ttl,
        )

# ─── Factory ─────────────────────────────────────────────────────────────────

def get_storage_provider(config: Settings = settings) -> StorageProvider:
    if config.STORAGE_TYPE.lower() == "s3":
        return S3StorageProvider(config)
    return LocalStorageProvider(config.ARTIFACT_DIR)
