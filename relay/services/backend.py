from __future__ import annotations

from typing import Any

import httpx
import structlog

from relay.core.config import Settings
from relay.services.registry import AccountRecord
from relay.services.retry import MalformedRequestError

logger = structlog.get_logger(__name__)


class BackendError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class AccountNotFoundError(Exception):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


def parse_account(raw: Any) -> AccountRecord | None:
    if not isinstance(raw, dict):
        return None
    account_id = raw.get("id")
    if account_id is None:
        return None
    active = raw.get("ativo", raw.get("active", True))
    return AccountRecord(
        id=str(account_id),
        name=str(raw.get("nome") or raw.get("name") or account_id),
        token=raw.get("api_token") or raw.get("token") or None,
        active=active is not False,
    )


class BackendClient:
    """HTTP client for the backend's ingestion, asset and roster functions.

    One ``httpx.AsyncClient`` is shared by every call so concurrent deliveries
    reuse a keep-alive pool instead of opening a connection each.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = settings.BACKEND_URL.rstrip("/")
        self.ingest_path = settings.INGEST_PATH
        self.asset_path = settings.ASSET_PATH
        self.roster_path = settings.ROSTER_PATH
        self.headers = {
            "Content-Type": "application/json",
            "apikey": settings.BACKEND_ANON_KEY,
            "x-sync-secret": settings.SYNC_SECRET,
        }
        limits = httpx.Limits(
            max_keepalive_connections=settings.HTTP_MAX_CONNECTIONS,
            max_connections=settings.HTTP_MAX_CONNECTIONS,
        )
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.REQUEST_TIMEOUT_SEC),
            limits=limits,
            headers=self.headers,
            transport=transport,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _post(self, path: str, payload: dict | None = None) -> httpx.Response:
        if not self.base_url:
            raise MalformedRequestError("BACKEND_URL is not configured")
        response = await self._client.post(self._url(path), json=payload or {})
        if response.is_error:
            logger.error(
                "errors",
                stage="backend_http",
                path=path,
                status_code=response.status_code,
                response=response.text[:500],
            )
        response.raise_for_status()
        return response

    async def post_message(self, payload: dict[str, Any]) -> str:
        data = payload.get("data")
        if not isinstance(data, dict) or not data.get("chatId"):
            raise MalformedRequestError("Message payload is missing chatId")
        response = await self._post(self.ingest_path, payload)
        return response.text

    async def upload_asset(
        self,
        *,
        base64_data: str,
        mime_type: str,
        file_unique_id: str,
        file_id: str | None,
        account_id: str,
        media_type: str,
    ) -> dict[str, Any]:
        if not base64_data:
            raise MalformedRequestError("Empty media payload")
        response = await self._post(
            self.asset_path,
            {
                "base64Data": base64_data,
                "mimeType": mime_type,
                "fileUniqueId": file_unique_id,
                "fileId": file_id,
                "botId": account_id,
                "accountId": account_id,
                "mediaType": media_type,
            },
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(
                "Asset endpoint returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise BackendError("Asset endpoint returned unexpected payload")
        return data

    async def _fetch_roster(self) -> list[AccountRecord]:
        response = await self._post(self.roster_path)
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(
                "Roster endpoint returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        raw_accounts = data.get("bots") if isinstance(data, dict) else None
        if not isinstance(raw_accounts, list):
            raise BackendError("Roster endpoint returned no account list")
        return [record for record in map(parse_account, raw_accounts) if record]

    async def list_accounts(self) -> list[AccountRecord]:
        return [record for record in await self._fetch_roster() if record.active]

    async def get_account(self, account_id: str) -> AccountRecord:
        # explicit lookups ignore the active flag
        for record in await self._fetch_roster():
            if record.id == str(account_id):
                return record
        raise AccountNotFoundError(str(account_id))

    async def aclose(self) -> None:
        await self._client.aclose()
