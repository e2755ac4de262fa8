"""Object storage delivery over S3-compatible PUT with hand-built SigV4 signing."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Mapping
from urllib.parse import quote, urlparse

import httpx

from webshot import metrics
from webshot.schemas import ConfigurationError, WebshotError
from webshot.settings import StorageSettings

LOGGER = logging.getLogger(__name__)

Provider = Literal["r2", "s3"]

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
R2_REGION = "auto"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "application/pdf": "pdf",
}


class StorageNotConfiguredError(ConfigurationError):
    """No object storage credentials are configured."""


class UploadError(WebshotError):
    """The object store rejected the PUT."""

    def __init__(self, status_code: int, body: str, *, provider: str = "") -> None:
        super().__init__(f"{provider or 'storage'} upload failed with HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body
        self.provider = provider


@dataclass(frozen=True, slots=True)
class UploadOptions:
    content_type: str
    bucket: str | None = None
    path: str | None = None
    filename: str | None = None
    acl: Literal["private", "public-read"] = "private"


@dataclass(frozen=True, slots=True)
class UploadResult:
    url: str
    bucket: str
    key: str
    size: int
    provider: Provider

    def to_dict(self) -> dict[str, object]:
        return {
            "url": self.url,
            "bucket": self.bucket,
            "key": self.key,
            "size": self.size,
            "provider": self.provider,
        }


@dataclass(frozen=True, slots=True)
class StorageTarget:
    """Resolved endpoint plus credentials for one PUT."""

    provider: Provider
    bucket: str
    host: str
    region: str
    access_key_id: str
    secret_access_key: str
    public_base: str | None = None


def select_provider(settings: StorageSettings) -> Provider:
    """R2 when its endpoint and key are set, else S3 when AWS keys are set."""

    if settings.r2_endpoint and settings.r2_access_key_id:
        return "r2"
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        return "s3"
    raise StorageNotConfiguredError(
        "No storage provider configured: set CLOUDFLARE_R2_ENDPOINT and CLOUDFLARE_R2_ACCESS_KEY_ID, "
        "or AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY"
    )


def resolve_target(settings: StorageSettings, bucket: str | None = None) -> StorageTarget:
    provider = select_provider(settings)
    if provider == "r2":
        resolved_bucket = bucket or settings.r2_bucket
        if not resolved_bucket:
            raise StorageNotConfiguredError("CLOUDFLARE_R2_BUCKET is not set and no bucket was requested")
        if not settings.r2_secret_access_key:
            raise StorageNotConfiguredError("CLOUDFLARE_R2_SECRET_ACCESS_KEY is not set")
        endpoint = urlparse(settings.r2_endpoint or "")
        if not endpoint.netloc:
            raise StorageNotConfiguredError(f"CLOUDFLARE_R2_ENDPOINT is not a URL: {settings.r2_endpoint}")
        public_base = settings.r2_public_url or f"{settings.r2_endpoint.rstrip('/')}/{resolved_bucket}"
        return StorageTarget(
            provider="r2",
            bucket=resolved_bucket,
            host=f"{resolved_bucket}.{endpoint.netloc}",
            region=R2_REGION,
            access_key_id=settings.r2_access_key_id or "",
            secret_access_key=settings.r2_secret_access_key,
            public_base=public_base.rstrip("/"),
        )

    resolved_bucket = bucket or settings.s3_bucket
    if not resolved_bucket:
        raise StorageNotConfiguredError("S3_BUCKET is not set and no bucket was requested")
    return StorageTarget(
        provider="s3",
        bucket=resolved_bucket,
        host=f"{resolved_bucket}.s3.{settings.aws_region}.amazonaws.com",
        region=settings.aws_region,
        access_key_id=settings.aws_access_key_id or "",
        secret_access_key=settings.aws_secret_access_key or "",
    )


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, "png")


def generate_object_key(
    content_type: str,
    *,
    path: str | None = None,
    filename: str | None = None,
    default_path: str = "screenshots",
    now: datetime | None = None,
    token: str | None = None,
) -> str:
    """``{path}/{filename}.{ext}``; filenames default to ``screenshot-<epoch ms>-<16 hex>``."""

    base = (path or default_path).strip("/")
    if not filename:
        moment = now or datetime.now(timezone.utc)
        suffix = token or secrets.token_hex(8)
        filename = f"screenshot-{int(moment.timestamp() * 1000)}-{suffix}"
    return f"{base}/{filename}.{extension_for(content_type)}"


def canonical_uri(key: str) -> str:
    return "/" + quote(key.lstrip("/"), safe="/-_.~")


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def signing_key(secret_access_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def sign_request(
    *,
    method: str,
    key: str,
    headers: Mapping[str, str],
    payload_hash: str,
    access_key_id: str,
    secret_access_key: str,
    region: str,
    now: datetime,
    service: str = SERVICE,
) -> dict[str, str]:
    """Return ``headers`` plus the SigV4 date, content-hash and Authorization headers.

    Every header passed in is signed. Names are lower-cased and sorted for the
    canonical request; values are trimmed.
    """

    amz_date = now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    date_stamp = amz_date[:8]
    to_sign = {name.lower(): " ".join(str(value).split()) for name, value in headers.items()}
    to_sign["x-amz-content-sha256"] = payload_hash
    to_sign["x-amz-date"] = amz_date

    names = sorted(to_sign)
    canonical_headers = "".join(f"{name}:{to_sign[name]}\n" for name in names)
    signed_headers = ";".join(names)
    canonical_request = "\n".join(
        [
            method.upper(),
            canonical_uri(key),
            "",
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
    )
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [
            ALGORITHM,
            amz_date,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )
    signature = hmac.new(
        signing_key(secret_access_key, date_stamp, region, service),
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    signed = dict(to_sign)
    signed["authorization"] = (
        f"{ALGORITHM} Credential={access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return signed


def public_url(target: StorageTarget, key: str, acl: str) -> str:
    if target.provider == "r2":
        return f"{target.public_base}/{key}"
    if acl == "public-read":
        return f"https://{target.host}/{key}"
    return f"s3://{target.bucket}/{key}"


async def upload(
    data: bytes,
    options: UploadOptions,
    *,
    settings: StorageSettings,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> UploadResult:
    """PUT ``data`` to the configured bucket; no retries."""

    target = resolve_target(settings, options.bucket)
    moment = now or datetime.now(timezone.utc)
    key = generate_object_key(
        options.content_type,
        path=options.path,
        filename=options.filename,
        default_path=settings.default_path,
        now=moment,
    )
    headers = {"content-type": options.content_type, "host": target.host}
    if target.provider == "s3" and options.acl:
        headers["x-amz-acl"] = options.acl
    signed = sign_request(
        method="PUT",
        key=key,
        headers=headers,
        payload_hash=hashlib.sha256(data).hexdigest(),
        access_key_id=target.access_key_id,
        secret_access_key=target.secret_access_key,
        region=target.region,
        now=moment,
    )
    url = f"https://{target.host}{canonical_uri(key)}"

    LOGGER.debug("PUT %s (%s bytes)", url, len(data), extra={"provider": target.provider})
    try:
        if client is not None:
            response = await client.put(url, content=data, headers=signed)
        else:
            async with httpx.AsyncClient(timeout=settings.timeout_seconds) as owned:
                response = await owned.put(url, content=data, headers=signed)
    except httpx.HTTPError as exc:
        metrics.record_upload(target.provider, "error")
        raise UploadError(0, str(exc), provider=target.provider) from exc

    if response.status_code >= 300:
        metrics.record_upload(target.provider, "rejected")
        LOGGER.warning("%s upload rejected: HTTP %s", target.provider, response.status_code)
        raise UploadError(response.status_code, response.text, provider=target.provider)

    metrics.record_upload(target.provider, "ok")
    result = UploadResult(
        url=public_url(target, key, options.acl),
        bucket=target.bucket,
        key=key,
        size=len(data),
        provider=target.provider,
    )
    LOGGER.info("Uploaded %s bytes to %s", result.size, result.url)
    return result
