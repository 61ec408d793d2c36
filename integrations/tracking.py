"""Job tracking using Azure Table Storage.

Records are keyed by cache key so a client can poll the status of a
request it has already issued. Tracking never fails a compression:
storage errors are logged and dropped.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from azure.data.tables import TableServiceClient, TableClient
from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError


TABLE_NAME = "compressionjobs"
PARTITION = "jobs"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_table_client() -> TableClient:
    """Get Azure Table Storage client."""
    connection_string = os.environ["AzureWebJobsStorage"]
    table_service = TableServiceClient.from_connection_string(connection_string)

    # Ensure table exists
    try:
        table_service.create_table(TABLE_NAME)
    except ResourceExistsError:
        pass

    return table_service.get_table_client(TABLE_NAME)


def create_job_record(key: str, url: str, size_raw: str, media_kind: str) -> Optional[Dict]:
    """Create (or reset) the record for a newly admitted job."""
    entity = {
        "PartitionKey": PARTITION,
        "RowKey": key,
        "url": url,
        "size": size_raw,
        "media_kind": media_kind,
        "status": "queued",
        "created_at": _now(),
        "updated_at": _now(),
    }

    try:
        _get_table_client().upsert_entity(entity, mode="replace")
        logging.info("Created job record for %s", key)
    except (AzureError, KeyError) as exc:
        logging.warning("Could not create job record for %s: %s", key, str(exc))
        return None

    return entity


def update_job_status(
    key: str,
    status: str,
    result: Optional[Dict] = None,
    error_message: Optional[str] = None,
) -> None:
    """Update job status and metadata.

    Args:
        key: Cache key of the job
        status: New status (queued, processing, completed, failed)
        result: Response data (if completed)
        error_message: Error message (if failed)
    """
    try:
        table_client = _get_table_client()
        entity = table_client.get_entity(partition_key=PARTITION, row_key=key)

        entity["status"] = status
        entity["updated_at"] = _now()

        if status == "processing":
            entity["processing_started_at"] = _now()

        if status == "completed" and result:
            entity["completed_at"] = _now()
            entity["link"] = result.get("link", "")
            entity["cached"] = bool(result.get("cached"))
            if result.get("sizeReduction") is not None:
                entity["size_reduction"] = float(result["sizeReduction"])

        if status == "failed" and error_message:
            entity["error_message"] = error_message
            entity["failed_at"] = _now()

        table_client.update_entity(entity, mode="replace")
        logging.info("Updated job status for %s to %s", key, status)

    except ResourceNotFoundError:
        logging.error("Job record not found for %s", key)
    except (AzureError, KeyError) as exc:
        logging.warning("Could not update job record for %s: %s", key, str(exc))


def get_job_status(key: str) -> Optional[Dict]:
    """Get the tracked record for ``key``, or None when unknown."""
    table_client = _get_table_client()

    try:
        entity = table_client.get_entity(partition_key=PARTITION, row_key=key)
        return dict(entity)
    except ResourceNotFoundError:
        logging.warning("Job record not found for %s", key)
        return None
