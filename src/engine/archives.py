# src/engine/archives.py
import logging

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from engine.errors import BitorError, NotFoundError, ValidationError

SIGNED_URL_TTL_SECONDS = 900
FILE_TYPES = ("full", "small")


class ArchiveLinks:
    """Pre-signed download links for the archives a scan uploaded to its bucket."""

    def __init__(self, store, vault_bridge, client_factory=boto3.client):
        self.store = store
        self.vault_bridge = vault_bridge
        self.client_factory = client_factory

    def record_archive(self, job_id, client_id, provider_id, full_path, small_path):
        self.store.get_provider(provider_id)
        archive = self.store.add_archive(
            job_id=job_id, client_id=client_id, provider_id=provider_id,
            full_path=full_path, small_path=small_path,
        )
        self.store.update_fields(job_id, archived=True)
        logging.info(f"[job_id={job_id}] Recorded archive {archive.id}")
        return archive

    def signed_url(self, job_id: str, file_type: str) -> str:
        if file_type not in FILE_TYPES:
            raise ValidationError(f"file_type must be one of {', '.join(FILE_TYPES)}")
        archive = self.store.latest_archive(job_id)
        if archive is None:
            raise NotFoundError(f"No archive found for scan {job_id}")
        key = archive.full_path if file_type == "full" else archive.small_path
        if not key:
            raise NotFoundError(f"Scan {job_id} has no {file_type} archive")

        provider = self.store.get_provider(archive.provider_id)
        if "scan_storage" not in (provider.uses or []):
            raise ValidationError(f"Provider {provider.id} is not used for scan storage")
        settings = provider.settings or {}
        missing = [name for name in ("region", "endpoint", "bucket") if not settings.get(name)]
        if missing:
            raise ValidationError(f"Provider {provider.id} is missing settings: {', '.join(missing)}")

        keys = self.vault_bridge.provider_keys(provider)
        endpoint = settings["endpoint"]
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        s3 = self.client_factory(
            "s3",
            region_name=settings["region"],
            endpoint_url=endpoint,
            aws_access_key_id=keys["access_key"],
            aws_secret_access_key=keys["secret_key"],
            config=Config(s3={"addressing_style": "path" if settings.get("use_path_style") else "virtual"}),
        )
        try:
            url = s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": settings["bucket"], "Key": key.lstrip("/")},
                ExpiresIn=SIGNED_URL_TTL_SECONDS,
            )
        except (BotoCoreError, ClientError) as e:
            raise BitorError(f"failed to sign archive URL: {e}") from e
        logging.info(f"[job_id={job_id}] Signed {file_type} archive URL")
        return url
