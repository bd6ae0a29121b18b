"""Document storage port.

Unlike notifications, storage failures propagate: a bill row must never
point at a file that was not stored.

Called by: case_service.create_bill
Depends on: config.py (storage_api_url, storage_api_key)
"""

import logging
import uuid

import httpx

from ..exceptions import ExternalAdapterError

log = logging.getLogger("dealflow.storage")


def upload(data: bytes, mime_type: str, folder: str = "bills") -> dict:
    """Store a file, return {"url", "public_id"}."""
    from ..config import settings

    if not settings.storage_api_url:
        raise ExternalAdapterError("Document storage is not configured", folder=folder)
    try:
        r = httpx.post(
            f"{settings.storage_api_url.rstrip('/')}/upload",
            files={"file": (f"{uuid.uuid4().hex}", data, mime_type)},
            data={"folder": folder},
            headers={"Authorization": f"Bearer {settings.storage_api_key}"},
            timeout=30,
        )
    except httpx.HTTPError as e:
        raise ExternalAdapterError(f"Storage upload failed: {e}", folder=folder) from e
    if r.status_code >= 400:
        raise ExternalAdapterError(f"Storage upload returned {r.status_code}", folder=folder)
    body = r.json()
    log.info(f"Stored {len(data)} bytes as {body.get('public_id')}")
    return {"url": body["url"], "public_id": body["public_id"]}


def delete(public_id: str) -> None:
    from ..config import settings

    if not settings.storage_api_url:
        raise ExternalAdapterError("Document storage is not configured", public_id=public_id)
    try:
        r = httpx.delete(
            f"{settings.storage_api_url.rstrip('/')}/files/{public_id}",
            headers={"Authorization": f"Bearer {settings.storage_api_key}"},
            timeout=30,
        )
    except httpx.HTTPError as e:
        raise ExternalAdapterError(f"Storage delete failed: {e}", public_id=public_id) from e
    if r.status_code >= 400 and r.status_code != 404:
        raise ExternalAdapterError(f"Storage delete returned {r.status_code}", public_id=public_id)
