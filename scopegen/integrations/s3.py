import mimetypes
import os
import re
from functools import lru_cache
from typing import Dict, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.config import Config

PRESIGN_EXPIRES_SECONDS = 900
SAFE_EXTENSION = re.compile(r"^[a-z0-9]{1,5}$")


def is_configured() -> bool:
    return bool(os.getenv("S3_BUCKET"))


def _region() -> str:
    return os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1"


@lru_cache(maxsize=1)
def get_client():
    return boto3.client("s3", region_name=_region(), config=Config(signature_version="s3v4"))


def public_url_for(key: str) -> str:
    base = os.getenv("S3_PUBLIC_BASE_URL")
    if base:
        return f"{base.rstrip('/')}/{key}"
    return f"https://{os.getenv('S3_BUCKET')}.s3.{_region()}.amazonaws.com/{key}"


def parse_s3_url(url: str) -> Optional[Tuple[str, str]]:
    """Return ``(bucket, key)`` for URLs that point into S3, else ``None``."""
    match = re.match(r"^https://([^./]+)\.s3(?:\.[^./]+)?\.amazonaws\.com/(.+)$", url)
    if match:
        return match.group(1), match.group(2)
    match = re.match(r"^https://s3(?:\.[^./]+)?\.amazonaws\.com/([^/]+)/(.+)$", url)
    if match:
        return match.group(1), match.group(2)
    base = os.getenv("S3_PUBLIC_BASE_URL")
    bucket = os.getenv("S3_BUCKET")
    if base and bucket and url.startswith(base):
        return bucket, url[len(base):].lstrip("/")
    return None


def build_photo_key(user_id: str, job_id: int, content_type: str, filename: Optional[str] = None) -> str:
    extension = mimetypes.guess_extension(content_type) or ""
    if filename and "." in filename:
        candidate = filename.rsplit(".", 1)[1].lower()
        if SAFE_EXTENSION.match(candidate):
            extension = "." + candidate
    return f"mobile/{user_id}/{job_id}/{uuid4().hex}{extension}"


def presign_photo_upload(
    user_id: str,
    job_id: int,
    content_type: str,
    filename: Optional[str] = None,
) -> Dict[str, str]:
    if not is_configured():
        raise RuntimeError("S3_BUCKET not configured")
    key = build_photo_key(user_id, job_id, content_type, filename)
    upload_url = get_client().generate_presigned_url(
        "put_object",
        Params={"Bucket": os.getenv("S3_BUCKET"), "Key": key, "ContentType": content_type},
        ExpiresIn=PRESIGN_EXPIRES_SECONDS,
    )
    return {"key": key, "uploadUrl": upload_url, "publicUrl": public_url_for(key)}
