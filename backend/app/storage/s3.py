import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str
    use_ssl: bool
    public_base_url: str


def get_s3_config() -> Optional[S3Config]:
    # Endpoint/keys may be empty on AWS (default endpoint, instance credentials); the bucket may not.
    endpoint = (os.environ.get("S3_ENDPOINT_URL") or "").strip()
    access = (os.environ.get("S3_ACCESS_KEY_ID") or "").strip()
    secret = (os.environ.get("S3_SECRET_ACCESS_KEY") or "").strip()
    bucket = (os.environ.get("S3_BUCKET") or "").strip()
    region = (os.environ.get("S3_REGION") or os.environ.get("AWS_REGION") or "ap-south-1").strip() or "ap-south-1"
    use_ssl_raw = (os.environ.get("S3_USE_SSL") or "").strip().lower()
    use_ssl = use_ssl_raw not in {"0", "false", "no"}
    public_base_url = (os.environ.get("S3_PUBLIC_BASE_URL") or "").strip().rstrip("/")

    if not bucket:
        return None
    return S3Config(
        endpoint_url=endpoint,
        access_key_id=access,
        secret_access_key=secret,
        bucket=bucket,
        region=region,
        use_ssl=use_ssl,
        public_base_url=public_base_url,
    )


def s3_enabled() -> bool:
    return get_s3_config() is not None


def _client():
    # Lazy import: local-disk deployments never load boto3.
    import boto3
    from botocore.config import Config

    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")

    # Force v4 signatures so MinIO works consistently.
    bc = Config(signature_version="s3v4", s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url or None,
        aws_access_key_id=cfg.access_key_id or None,
        aws_secret_access_key=cfg.secret_access_key or None,
        region_name=cfg.region,
        use_ssl=cfg.use_ssl,
        config=bc,
    )


def put_file(*, key: str, file_path: str, content_type: str) -> str:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    c = _client()
    with open(file_path, "rb") as body:
        res = c.put_object(
            Bucket=cfg.bucket,
            Key=key,
            Body=body,
            ContentType=content_type or "application/octet-stream",
        )
    etag = (res.get("ETag") or "").strip('"')  # ETag is often quoted.
    return etag


def object_url(key: str) -> str:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    if cfg.public_base_url:
        return f"{cfg.public_base_url}/{key}"
    if cfg.endpoint_url:
        return f"{cfg.endpoint_url.rstrip('/')}/{cfg.bucket}/{key}"
    return f"https://{cfg.bucket}.s3.{cfg.region}.amazonaws.com/{key}"


def delete_object(*, key: str) -> None:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    _client().delete_object(Bucket=cfg.bucket, Key=key)
