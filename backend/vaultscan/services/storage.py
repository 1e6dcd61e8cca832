from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from vaultscan.core.config import Settings, settings as default_settings
from vaultscan.services.errors import VaultScanError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 300  # 5 minutes
MAX_METADATA_VALUE_LENGTH = 1024

# Provider tag -> S3-compatible backend holding its buckets.
_BACKENDS = {
    "r2": "r2",
    "r2_staging": "r2",
    "r2_quarantine": "r2",
    "b2": "b2",
}


class StorageError(VaultScanError):
    """Raised when the object store rejects or cannot complete an operation."""


@dataclass(frozen=True)
class SignedUrl:
    signed_url: str
    expires_in: int
    # Headers the caller must send with the request for the signature to hold.
    headers: dict[str, str] = field(default_factory=dict)


def _provider_name(provider: Any) -> str:
    return str(getattr(provider, "value", provider) or "").strip().lower()


def _clean_metadata_value(value: Any) -> str:
    text = str(value).encode("ascii", errors="replace").decode("ascii")
    return text[:MAX_METADATA_VALUE_LENGTH]


class StorageAdapter:
    """
    Uniform signed-URL / delete interface over the R2 and B2 S3-compatible
    backends. Callers never talk to boto3 directly.
    """

    def __init__(
        self,
        config: Settings | None = None,
        client_factory: Callable[[str], Any] | None = None,
    ):
        self.config = config or default_settings
        self._client_factory = client_factory or self._build_client
        self._clients: dict[str, Any] = {}

    def _build_client(self, backend: str) -> Any:
        if backend == "b2":
            return boto3.client(
                "s3",
                endpoint_url=self.config.B2_ENDPOINT_URL or None,
                aws_access_key_id=self.config.B2_ACCESS_KEY_ID or None,
                aws_secret_access_key=self.config.B2_SECRET_ACCESS_KEY or None,
                region_name=self.config.B2_REGION or None,
                config=Config(signature_version="s3v4"),
            )
        return boto3.client(
            "s3",
            endpoint_url=self.config.R2_ENDPOINT_URL or None,
            aws_access_key_id=self.config.R2_ACCESS_KEY_ID or None,
            aws_secret_access_key=self.config.R2_SECRET_ACCESS_KEY or None,
            region_name="auto",
            config=Config(signature_version="s3v4"),
        )

    def _client(self, provider: Any) -> Any:
        name = _provider_name(provider)
        backend = _BACKENDS.get(name)
        if backend is None:
            raise StorageError(f"Unknown storage provider: {name or provider!r}")
        if backend not in self._clients:
            self._clients[backend] = self._client_factory(backend)
        return self._clients[backend]

    def generate_upload_url(
        self,
        *,
        path: str,
        bucket: str,
        provider: Any,
        expires_in: int = DEFAULT_EXPIRES_IN,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SignedUrl:
        params: dict[str, Any] = {"Bucket": bucket, "Key": path}
        headers: dict[str, str] = {}
        if content_type:
            params["ContentType"] = content_type
            headers["Content-Type"] = content_type
        if metadata:
            clean = {str(k).lower(): _clean_metadata_value(v) for k, v in metadata.items()}
            params["Metadata"] = clean
            headers.update({f"x-amz-meta-{k}": v for k, v in clean.items()})

        try:
            url = self._client(provider).generate_presigned_url(
                ClientMethod="put_object",
                Params=params,
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to sign upload for {bucket}/{path}: {exc}") from exc
        return SignedUrl(signed_url=url, expires_in=expires_in, headers=headers)

    def generate_download_url(
        self,
        *,
        path: str,
        bucket: str,
        provider: Any,
        expires_in: int = DEFAULT_EXPIRES_IN,
    ) -> SignedUrl:
        try:
            url = self._client(provider).generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to sign download for {bucket}/{path}: {exc}") from exc
        return SignedUrl(signed_url=url, expires_in=expires_in)

    def delete_file(self, *, path: str, bucket: str, provider: Any) -> None:
        try:
            self._client(provider).delete_object(Bucket=bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete {bucket}/{path}: {exc}") from exc
        logger.info("Deleted object bucket=%s key=%s provider=%s", bucket, path, _provider_name(provider))
