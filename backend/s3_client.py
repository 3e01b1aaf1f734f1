"""
S3 storage for generated report PDFs.
Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_REGION, S3_BUCKET.
Every call is best-effort: without a bucket, or on any S3 error, it returns False/None.
"""
from __future__ import annotations

import logging
import os
from io import BytesIO

import boto3
from botocore.exceptions import BotoCoreError, ClientError

_LOG = logging.getLogger("uvicorn.error")

S3_BUCKET = os.environ.get("S3_BUCKET", "")
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")


def _client():
    return boto3.client("s3", region_name=AWS_REGION)


def job_report_key(organization_id: str, job_id: str, report_run_id: str, pdf_hash: str) -> str:
    return f"{organization_id}/{job_id}/{report_run_id}/{pdf_hash}.pdf"


def executive_brief_key(organization_id: str, report_run_id: str, pdf_hash: str) -> str:
    return f"{organization_id}/executive-briefs/{report_run_id}/{pdf_hash}.pdf"


def upload_bytes(key: str, body: bytes, content_type: str = "application/pdf") -> bool:
    if not S3_BUCKET:
        return False
    try:
        _client().put_object(Bucket=S3_BUCKET, Key=key, Body=body, ContentType=content_type)
        return True
    except (BotoCoreError, ClientError) as e:
        _LOG.warning("s3_upload_failed key=%s error=%s", key, e)
        return False


def download_bytes(key: str) -> bytes | None:
    if not S3_BUCKET:
        return None
    try:
        buf = BytesIO()
        _client().download_fileobj(S3_BUCKET, key, buf)
        return buf.getvalue()
    except (BotoCoreError, ClientError) as e:
        _LOG.warning("s3_download_failed key=%s error=%s", key, e)
        return None


def presigned_url(key: str, expires_in: int = 3600) -> str | None:
    if not S3_BUCKET:
        return None
    try:
        return _client().generate_presigned_url(
            "get_object", Params={"Bucket": S3_BUCKET, "Key": key}, ExpiresIn=expires_in
        )
    except (BotoCoreError, ClientError) as e:
        _LOG.warning("s3_presign_failed key=%s error=%s", key, e)
        return None
