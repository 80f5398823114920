"""
MinIO access for bid documents.

Bid documents live under
`{company_id}/{job_id}/bid_level/{division}/{contractor}/<file>` in the
configured bucket and are read through the S3-compatible API via boto3.

Key Operations:
---------------
- list_files: keys under a job-relative directory
- list_subdirectories: immediate "folders" under a job-relative directory
- read_file_bytes: raw bytes of one object, kept in memory
"""
import boto3
from os.path import basename
from botocore.exceptions import ClientError
from botocore.config import Config as BotoConfig

from utils.vault import secrets
from utils.core.log import get_logger


# MinIO config from Vault/env. Only these keys are used:
#   minio_bucket, minio_endpoint, minio_root_password, minio_root_user, minio_secure
MINIO_ACCESS_KEY = (secrets.get("minio_root_user", default="") or "").strip()
MINIO_SECRET_KEY = (secrets.get("minio_root_password", default="") or "").strip()
_minio_endpoint = (secrets.get("minio_endpoint", default="") or "").strip().rstrip("/")
MINIO_BUCKET = (secrets.get("minio_bucket", default="") or "").strip()
MINIO_SECURE = (secrets.get("minio_secure", default="") or "").strip().lower() == "true"
MINIO_ENDPOINT = _minio_endpoint if _minio_endpoint else "http://minio:9000"

bucket_name = MINIO_BUCKET

EXCLUDED_FILES = {".DS_Store", "._.DS_Store", "Thumbs.db", ".git", ".gitignore"}

S3_BOTOCORE_CONFIG = BotoConfig(
    max_pool_connections=32,
    retries={"max_attempts": 10, "mode": "adaptive"},
)

s3_client = boto3.client(
    "s3",
    endpoint_url=MINIO_ENDPOINT,
    aws_access_key_id=MINIO_ACCESS_KEY,
    aws_secret_access_key=MINIO_SECRET_KEY,
    use_ssl=MINIO_SECURE,
    config=S3_BOTOCORE_CONFIG,
)

_NOT_FOUND = ("NoSuchKey", "404", "NotFound")


def _nested_key(company_id: str, job_id: str, path: str) -> str:
    """company/job + normalized relative path"""
    return f"{company_id}/{job_id}/{path.lstrip('/')}"


def _require_bucket() -> None:
    if not bucket_name:
        raise RuntimeError("MINIO_BUCKET environment variable is not set")


def _get_s3_file_list(bucket: str, prefix: str) -> list:
    """
    Get list of files from S3/MinIO bucket.

    Returns:
        List of file info dictionaries with 'Key' and 'Size'
    """
    file_list = []
    paginator = s3_client.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            file_list.append({"Key": obj["Key"], "Size": obj.get("Size", 0)})
    return file_list


def _get_s3_subdirectories(bucket: str, prefix: str) -> list[str]:
    """Gets subdirectories from S3/MinIO using CommonPrefixes."""
    subdir_list: list[str] = []
    paginator = s3_client.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter="/"):
        for cp in page.get("CommonPrefixes", []):
            full_path = cp.get("Prefix", "")
            subdir_name = full_path.replace(prefix, "", 1).strip("/")
            if subdir_name:
                subdir_list.append(subdir_name)
    return subdir_list


def list_files(job_id: str, subdir: str, company_id: str) -> list[str]:
    """
    List all non-empty files under a job directory.

    Args:
        job_id: Unique job identifier
        subdir: Directory within the job (e.g., "bid_level/23/acme/")
        company_id: Unique company identifier

    Returns:
        Sorted list of full keys
    """
    _require_bucket()
    prefix = _nested_key(company_id, job_id, subdir).replace("\\", "/")
    keys = [
        item["Key"]
        for item in _get_s3_file_list(bucket_name, prefix)
        if item["Size"] and basename(item["Key"]) not in EXCLUDED_FILES
    ]
    return sorted(keys)


def list_subdirectories(job_id: str, subdir: str, company_id: str) -> list[str]:
    """
    List all 'subdirectories' (common prefixes) in a MinIO directory.

    Returns:
        Sorted list of subdirectory names (e.g., ["ContractorA", "ContractorB"]).
    """
    _require_bucket()
    prefix = _nested_key(company_id, job_id, subdir).replace("\\", "/").rstrip("/") + "/"
    # Unique + sorted for deterministic behavior
    return sorted(set(_get_s3_subdirectories(bucket_name, prefix)))


def read_file_bytes(cloud_key: str) -> bytes:
    """
    Raw bytes of one object.

    Raises:
        FileNotFoundError: If the key does not exist
    """
    logger = get_logger()
    _require_bucket()
    try:
        resp = s3_client.get_object(Bucket=bucket_name, Key=cloud_key)
        data = resp["Body"].read()
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") in _NOT_FOUND:
            logger.error(f"File not found in MinIO storage: minio://{bucket_name}/{cloud_key}")
            raise FileNotFoundError(f"File not found in MinIO: {cloud_key}") from e
        logger.error(f"Boto3 ClientError during read of {cloud_key}: {e}")
        raise
    logger.debug(f"Read {len(data)} bytes from minio://{bucket_name}/{cloud_key}")
    return data

