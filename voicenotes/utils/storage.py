# voicenotes/utils/storage.py
from __future__ import annotations
import os
import re
import boto3
from botocore.config import Config
from ..config import get_settings

def s3_client():
    settings = get_settings()
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            retries={"max_attempts": 4, "mode": "standard"},
        ),
    )

def normalize_storage_path(path: str | None, bucket: str | None = None) -> str | None:
    """
    'u1/a.m4a' -> 'recordings/u1/a.m4a'; strips leading '/', collapses '//'.
    Returns None for empty input.
    """
    if not isinstance(path, str):
        return None
    bucket = bucket or get_settings().recordings_bucket
    normalized = path.strip()
    if not normalized:
        return None
    normalized = normalized.lstrip("/")
    if not normalized.startswith(f"{bucket}/"):
        normalized = f"{bucket}/{normalized}"
    return re.sub(r"/{2,}", "/", normalized)

def split_storage_path(path: str) -> tuple[str, str]:
    bucket, _, object_name = path.partition("/")
    return bucket, object_name

def create_signed_url(object_name: str, expires_in: int | None = None, bucket: str | None = None) -> str:
    settings = get_settings()
    s3 = s3_client()
    return s3.generate_presigned_url(
        "get_object",
        Params={"Bucket": bucket or settings.recordings_bucket, "Key": object_name},
        ExpiresIn=expires_in or settings.signed_url_ttl,
    )

def upload_bytes(bucket: str, key: str, data: bytes, content_type: str, **extra) -> str:
    s3 = s3_client()
    s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type, **extra)
    return f"{bucket}/{key}"

def public_url(bucket: str, key: str) -> str:
    settings = get_settings()
    base = os.getenv("S3_PUBLIC_BASE_URL") or f"{(settings.s3_endpoint or '').rstrip('/')}/{bucket}"
    return f"{base.rstrip('/')}/{key}"

def delete_object(bucket: str, key: str) -> None:
    s3_client().delete_object(Bucket=bucket, Key=key)
