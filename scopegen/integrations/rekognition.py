import os
from functools import lru_cache
from typing import Any, Dict

import boto3
import httpx

from scopegen.integrations import s3

MAX_LABELS = 25
MIN_CONFIDENCE = 60.0


def is_configured() -> bool:
    return bool(os.getenv("AWS_ACCESS_KEY_ID") and os.getenv("AWS_SECRET_ACCESS_KEY"))


@lru_cache(maxsize=1)
def get_client():
    region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1"
    return boto3.client("rekognition", region_name=region)


def _image_argument(image_url: str) -> Dict[str, Any]:
    location = s3.parse_s3_url(image_url)
    if location:
        bucket, key = location
        return {"S3Object": {"Bucket": bucket, "Name": key}}
    with httpx.Client(timeout=float(os.getenv("VISION_FETCH_TIMEOUT", "20"))) as client:
        response = client.get(image_url)
        response.raise_for_status()
    return {"Bytes": response.content}


def detect_labels(image_url: str) -> Dict[str, Any]:
    """Run label detection and return the detector result stored on findings."""
    if not is_configured():
        raise RuntimeError("AWS credentials not configured for Rekognition")
    response = get_client().detect_labels(
        Image=_image_argument(image_url),
        MaxLabels=MAX_LABELS,
        MinConfidence=MIN_CONFIDENCE,
    )
    labels = [
        {"name": label["Name"], "confidence": float(label.get("Confidence", 0.0))}
        for label in response.get("Labels", [])
    ]
    return {
        "provider": "aws",
        "service": "rekognition",
        "model": response.get("LabelModelVersion"),
        "labels": labels,
    }
