"""Upload of compressed artifacts to Azure Blob Storage with time-limited SAS links."""

import logging
import os
from datetime import datetime, timedelta
from typing import Optional, Tuple

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.storage.blob import (
    BlobServiceClient,
    BlobSasPermissions,
    ContentSettings,
    generate_blob_sas,
)

from integrations.errors import UploadError


def _parse_connection_string(connection_string: str) -> dict:
    """Parse Azure Storage connection string into a dictionary."""
    parts = connection_string.split(";")
    kv_pairs = [p for p in parts if p]
    result: dict = {}
    for pair in kv_pairs:
        if "=" in pair:
            key, value = pair.split("=", 1)
            result[key] = value
    return result


def _get_account_info_from_connection_string(connection_string: str) -> Tuple[str, str]:
    """Extract account name and key from the connection string.

    Raises a ValueError if either value is missing.
    """
    parsed = _parse_connection_string(connection_string)
    account_name = parsed.get("AccountName")
    account_key = parsed.get("AccountKey")
    if not account_name or not account_key:
        raise ValueError("Connection string must include AccountName and AccountKey")
    return account_name, account_key


class BlobUploader:
    """``upload(bytes, filename) -> url`` against a single blob container."""

    def __init__(
        self,
        container: str = "compressed",
        expiry_minutes: int = 1440,
        connection_string: Optional[str] = None,
    ) -> None:
        self.container = container
        self.expiry_minutes = expiry_minutes
        self._connection_string = connection_string
        self._container_ready = False

    @property
    def connection_string(self) -> str:
        value = self._connection_string or os.environ.get("AzureWebJobsStorage")
        if not value:
            raise UploadError("AzureWebJobsStorage is not configured")
        return value

    def upload(self, data: bytes, filename: str, content_type: str = "application/octet-stream") -> str:
        """Upload ``data`` as ``filename`` and return a read-only SAS URL."""
        try:
            connection_string = self.connection_string
            account_name, account_key = _get_account_info_from_connection_string(connection_string)
            blob_service = BlobServiceClient.from_connection_string(connection_string)

            if not self._container_ready:
                try:
                    blob_service.get_container_client(self.container).create_container()
                except ResourceExistsError:
                    pass
                self._container_ready = True

            blob_client = blob_service.get_blob_client(container=self.container, blob=filename)
            blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )

            sas = generate_blob_sas(
                account_name=account_name,
                container_name=self.container,
                blob_name=filename,
                account_key=account_key,
                permission=BlobSasPermissions(read=True),
                expiry=datetime.utcnow() + timedelta(minutes=self.expiry_minutes),
            )
        except (AzureError, ValueError) as exc:
            logging.error("Upload of %s failed: %s", filename, str(exc))
            raise UploadError(f"Upload failed: {exc}") from exc

        logging.info("Uploaded %s (%d bytes) to container %s", filename, len(data), self.container)
        return f"{blob_client.url}?{sas}"
