"""
Remote progress services.

``ProgressService`` is the network boundary the tracker depends on. Two
implementations are provided:

- HttpProgressService: the portal's REST API (JSON over HTTP)
- BlobProgressService: the serverless ``sync-data`` function that keeps one
  blob per device with progress, dashboard data and settings

Both retry transport errors with bounded exponential back-off and report
failures as SyncError subclasses.
"""
import logging
import secrets
import string
import time
from typing import Optional, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from prep_tracker.errors import NetworkUnavailable, PushFailed, SyncError
from prep_tracker.schemas import ProgressDocument, SettingsDocument, load_document
from prep_tracker.store import LocalStore

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "deviceId"
_BASE36 = string.digits + string.ascii_lowercase


class ProgressService(Protocol):
    """What the tracker needs from the remote side."""

    async def fetch_progress(self, user_id: str) -> Optional[ProgressDocument]: ...

    async def push_progress(self, user_id: str, document: ProgressDocument) -> None: ...

    async def fetch_settings(self, user_id: str) -> Optional[SettingsDocument]: ...

    async def push_settings(self, user_id: str, settings: SettingsDocument) -> None: ...

    async def push_activity(self, user_id: str, operation: str, payload: dict) -> None: ...


class _RetryingClient:
    """Shared httpx plumbing: one client, tenacity retries, error mapping."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_max_wait: float = 8.0,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry_attempts = max(1, retry_attempts)
        self._retry_max_wait = retry_max_wait

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=0.5, max=self._retry_max_wait),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    return await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} unreachable after {self._retry_attempts} attempts: {e}")
            raise NetworkUnavailable(str(e)) from e

    @staticmethod
    def _unwrap(response: httpx.Response):
        """Return the payload of a JSON response, accepting a {success, data} envelope."""
        try:
            body = response.json()
        except ValueError as e:
            raise SyncError(f"Malformed response from {response.url}: {e}") from e
        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                raise PushFailed(body.get("error") or body.get("message") or "request failed", response.status_code)
            return body.get("data")
        return body


class HttpProgressService(_RetryingClient):
    """ProgressService backed by the portal REST API."""

    def __init__(self, base_url: str, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    async def fetch_progress(self, user_id: str) -> Optional[ProgressDocument]:
        data = await self._get(f"{self.base_url}/progress/{user_id}")
        return load_document(ProgressDocument, data) if data else None

    async def push_progress(self, user_id: str, document: ProgressDocument) -> None:
        await self._write("PUT", f"{self.base_url}/progress/{user_id}", document.model_dump(mode="json"))

    async def fetch_settings(self, user_id: str) -> Optional[SettingsDocument]:
        data = await self._get(f"{self.base_url}/settings/{user_id}")
        return load_document(SettingsDocument, data) if data else None

    async def push_settings(self, user_id: str, settings: SettingsDocument) -> None:
        await self._write("PUT", f"{self.base_url}/settings/{user_id}", settings.model_dump(mode="json"))

    async def push_activity(self, user_id: str, operation: str, payload: dict) -> None:
        await self._write(
            "POST",
            f"{self.base_url}/progress/{user_id}/activity",
            {"operation": operation, "data": payload},
        )

    async def _get(self, url: str):
        response = await self._request("GET", url)
        if response.status_code == 404:
            return None
        if response.is_error:
            raise SyncError(f"GET {url} failed with status {response.status_code}")
        return self._unwrap(response)

    async def _write(self, method: str, url: str, payload: dict) -> None:
        response = await self._request(method, url, json=payload)
        if response.is_error:
            raise PushFailed(f"{method} {url} failed with status {response.status_code}", response.status_code)
        self._unwrap(response)
        logger.debug(f"{method} {url} accepted")


class BlobProgressService(_RetryingClient):
    """ProgressService backed by the per-device ``sync-data`` blob function."""

    def __init__(self, url: str, device_id: str, **kwargs):
        super().__init__(**kwargs)
        self.url = url
        self.device_id = device_id

    async def fetch_progress(self, user_id: str) -> Optional[ProgressDocument]:
        blob = await self.load()
        progress = (blob or {}).get("progress")
        return load_document(ProgressDocument, progress) if progress else None

    async def push_progress(self, user_id: str, document: ProgressDocument) -> None:
        blob = await self.load() or {}
        await self.save(
            progress=document.model_dump(mode="json"),
            dashboard_data=document.statistics.model_dump(mode="json"),
            settings=blob.get("settings") or {},
        )

    async def fetch_settings(self, user_id: str) -> Optional[SettingsDocument]:
        blob = await self.load()
        settings = (blob or {}).get("settings")
        return load_document(SettingsDocument, settings) if settings else None

    async def push_settings(self, user_id: str, settings: SettingsDocument) -> None:
        blob = await self.load() or {}
        await self.save(
            progress=blob.get("progress") or {},
            dashboard_data=blob.get("dashboardData") or {},
            settings=settings.model_dump(mode="json"),
        )

    async def push_activity(self, user_id: str, operation: str, payload: dict) -> None:
        # The blob only holds whole documents; the next push_progress carries this change.
        logger.debug(f"Blob store has no activity endpoint, {operation} rides on the next document push")

    async def load(self) -> Optional[dict]:
        """Fetch this device's blob, or None for a device with no cloud data."""
        response = await self._request("POST", self.url, json={"deviceId": self.device_id, "action": "load"})
        if response.status_code == 404:
            logger.info(f"No cloud data found for device {self.device_id}")
            return None
        if response.is_error:
            raise SyncError(f"Cloud load failed with status {response.status_code}")
        return self._unwrap(response)

    async def save(self, progress: dict, dashboard_data: dict, settings: dict) -> None:
        response = await self._request("POST", self.url, json={
            "deviceId": self.device_id,
            "action": "save",
            "data": {"progress": progress, "dashboardData": dashboard_data, "settings": settings},
        })
        if response.is_error:
            raise PushFailed(f"Cloud save failed with status {response.status_code}", response.status_code)
        self._unwrap(response)
        logger.info(f"Data synced to cloud for device {self.device_id}")


def new_device_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"device_{int(time.time() * 1000)}_{suffix}"


async def get_or_create_device_id(store: LocalStore) -> str:
    """Return this installation's device id, creating and persisting one on first use."""
    record = await store.get("settings", DEVICE_ID_KEY)
    if record and record.get("value"):
        return record["value"]
    device_id = new_device_id()
    await store.put("settings", {"key": DEVICE_ID_KEY, "value": device_id})
    logger.info(f"New device ID created: {device_id}")
    return device_id
