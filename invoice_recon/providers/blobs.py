"""S3-compatible blob store (Cloudflare R2) used for the document archive."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from invoice_recon.core.config import Settings
from invoice_recon.core.errors import ConfigurationError, NotFoundError, ProviderError, TransientError
from invoice_recon.core.utils import chunked

logger = logging.getLogger(__name__)

DELETE_CHUNK = 1000
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {"500", "502", "503", "504", "SlowDown", "Throttling", "RequestTimeout", "InternalError"}
_NETWORK_ERRORS = (ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError)


@dataclass(frozen=True)
class BlobObject:
    key: str
    etag: str = ""
    size: int = 0


def quote_key(key: str) -> str:
    """Percent-encode every path segment of an object key, keeping slashes."""

    return quote(key, safe="/")


def _clean_etag(raw: Optional[str]) -> str:
    return (raw or "").strip().strip('"')


def _error_code(exc: ClientError) -> str:
    error = exc.response.get("Error", {}) if exc.response else {}
    return str(error.get("Code", ""))


def _translate(exc: Exception, action: str, key: str) -> ProviderError:
    if isinstance(exc, _NETWORK_ERRORS):
        return TransientError(f"{action} {key}: {exc}")
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _MISSING_CODES:
            return NotFoundError(f"{action} {key}: object not found")
        if code in _TRANSIENT_CODES:
            return TransientError(f"{action} {key}: {code}")
        return ProviderError(f"{action} {key}: {code or exc}")
    return ProviderError(f"{action} {key}: {exc}")


class S3BlobStore:
    """Thin wrapper over a boto3 S3 client bound to one bucket."""

    def __init__(self, client: Any, bucket: str, public_base: str = "") -> None:
        self.client = client
        self.bucket = bucket
        self.public_base = public_base.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        settings.require("r2_endpoint", "r2_access_key_id", "r2_secret_access_key", "r2_bucket")
        if not settings.r2_endpoint.startswith("http"):
            raise ConfigurationError(f"R2_ENDPOINT must be a URL, got {settings.r2_endpoint!r}")
        client = boto3.client(
            "s3",
            endpoint_url=settings.r2_endpoint,
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            region_name="auto",
            config=Config(
                connect_timeout=settings.request_timeout,
                read_timeout=settings.request_timeout,
                retries={"max_attempts": 1, "mode": "standard"},
                signature_version="s3v4",
            ),
        )
        return cls(client, settings.r2_bucket, settings.r2_public_url)

    def public_url(self, key: str) -> str:
        return f"{self.public_base}/{quote_key(key)}"

    def list(self, prefix: str) -> Iterator[BlobObject]:
        """Yield every object under ``prefix``, following continuation tokens."""

        params = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            try:
                response = self.client.list_objects_v2(**params)
            except (ClientError, *_NETWORK_ERRORS) as exc:
                raise _translate(exc, "list", prefix) from exc
            for item in response.get("Contents", []) or []:
                yield BlobObject(item["Key"], _clean_etag(item.get("ETag")), int(item.get("Size", 0) or 0))
            if not response.get("IsTruncated"):
                break
            params["ContinuationToken"] = response["NextContinuationToken"]

    def head(self, key: str) -> Optional[BlobObject]:
        """Return object metadata, or None when the key does not exist."""

        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, *_NETWORK_ERRORS) as exc:
            error = _translate(exc, "head", key)
            if isinstance(error, NotFoundError):
                return None
            raise error from exc
        return BlobObject(key, _clean_etag(response.get("ETag")), int(response.get("ContentLength", 0) or 0))

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, *_NETWORK_ERRORS) as exc:
            raise _translate(exc, "get", key) from exc

    def put(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> BlobObject:
        try:
            response = self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        except (ClientError, *_NETWORK_ERRORS) as exc:
            raise _translate(exc, "put", key) from exc
        return BlobObject(key, _clean_etag(response.get("ETag")), len(body))

    def copy(self, source_key: str, dest_key: str) -> BlobObject:
        """Server-side copy inside the bucket.

        The dict form of ``CopySource`` lets botocore percent-encode the key
        exactly once.
        """

        try:
            response = self.client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
            )
        except (ClientError, *_NETWORK_ERRORS) as exc:
            raise _translate(exc, "copy", source_key) from exc
        etag = _clean_etag((response.get("CopyObjectResult") or {}).get("ETag"))
        return BlobObject(dest_key, etag)

    def delete_many(self, keys: Sequence[str], chunk_size: int = DELETE_CHUNK) -> Tuple[List[str], List[Tuple[str, str]]]:
        """Delete keys in chunks; a failing chunk is recorded and the rest continue."""

        deleted: List[str] = []
        failed: List[Tuple[str, str]] = []
        for chunk in chunked(list(keys), chunk_size):
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": False},
                )
            except (ClientError, *_NETWORK_ERRORS) as exc:
                reason = str(_translate(exc, "delete", f"{len(chunk)} keys"))
                logger.error("Blob delete chunk failed: %s", reason)
                failed.extend((key, reason) for key in chunk)
                continue
            deleted.extend(item["Key"] for item in response.get("Deleted", []) or [])
            for item in response.get("Errors", []) or []:
                failed.append((item.get("Key", ""), item.get("Message") or item.get("Code", "error")))
        return deleted, failed
