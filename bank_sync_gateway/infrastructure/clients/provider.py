"""Aggregation provider HTTP client (item status, accounts, transactions, revocation)"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx

from bank_sync_gateway.config import settings
from bank_sync_gateway.domain.exceptions import AuthError, ProviderError, RateLimited, TransientError
from bank_sync_gateway.domain.models import AccountSnapshot, DeleteAccountResult, ItemStatus, TransactionRecord
from bank_sync_gateway.domain.webhooks import is_auth_error_code
from bank_sync_gateway.infrastructure.observability.metrics import provider_failures_counter
from bank_sync_gateway.utils.date_utils import parse_timestamp


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class ProviderClient:
    """
    Client for the external aggregation provider.

    Every failure leaves this class as one of the typed errors in
    domain.exceptions, so callers never inspect provider error strings:

    - timeouts / transport errors / 5xx  -> TransientError
    - 429                                -> RateLimited
    - 401/403 or an auth error_code      -> AuthError
    - other 4xx, unparseable responses   -> ProviderError
    """

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        page_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.provider_api_base
        self.client_id = client_id if client_id is not None else settings.provider_client_id
        self.secret = secret if secret is not None else settings.provider_secret
        self.timeout = timeout or settings.http_timeout_seconds
        self.page_size = page_size or settings.provider_page_size
        self._transport = transport

    async def _post(self, client: httpx.AsyncClient, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"client_id": self.client_id, "secret": self.secret, **body}
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TimeoutException as e:
            provider_failures_counter.labels(kind="timeout").inc()
            raise TransientError(f"Provider timeout after {self.timeout}s on {path}") from e
        except httpx.RequestError as e:
            provider_failures_counter.labels(kind="network").inc()
            raise TransientError(f"Provider unreachable on {path}: {e}") from e

        if response.status_code >= 400:
            raise self._normalize_error(path, response)

        try:
            return response.json()
        except ValueError as e:
            provider_failures_counter.labels(kind="invalid_response").inc()
            raise ProviderError(f"Invalid JSON from provider on {path}") from e

    def _normalize_error(self, path: str, response: httpx.Response) -> ProviderError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        error_code = body.get("error_code") if isinstance(body, dict) else None
        message = (body.get("error_message") if isinstance(body, dict) else None) or response.text[:200]
        description = f"Provider error {status} on {path}: {error_code or message}"

        if status in (401, 403) or is_auth_error_code(error_code):
            provider_failures_counter.labels(kind="auth").inc()
            return AuthError(description, error_code=error_code, status_code=status)
        if status == 429:
            provider_failures_counter.labels(kind="rate_limited").inc()
            retry_after = response.headers.get("Retry-After")
            return RateLimited(
                description,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                error_code=error_code,
                status_code=status,
            )
        if status >= 500:
            provider_failures_counter.labels(kind="server").inc()
            return TransientError(description, error_code=error_code, status_code=status)

        provider_failures_counter.labels(kind="client").inc()
        return ProviderError(description, error_code=error_code, status_code=status)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def get_item_status(self, access_token: str) -> ItemStatus:
        """
        Check item health.

        A provider-reported item error is returned (ok=False), not raised;
        a rejected access token raises AuthError.
        """
        async with self._client() as client:
            data = await self._post(client, "/item/get", {"access_token": access_token})

        error = data.get("error") or (data.get("item") or {}).get("error")
        if error:
            return ItemStatus(
                ok=False,
                error=error.get("error_message") or error.get("error_code") or "Unknown item error",
                error_code=error.get("error_code"),
            )

        try:
            consent_expires_at = parse_timestamp((data.get("item") or {}).get("consent_expiration_time"))
        except ValueError:
            logging.warning("Ignoring unreadable consent expiration time")
            consent_expires_at = None
        return ItemStatus(ok=True, consent_expires_at=consent_expires_at)

    async def get_accounts(self, access_token: str) -> List[AccountSnapshot]:
        async with self._client() as client:
            data = await self._post(client, "/accounts/get", {"access_token": access_token})

        try:
            return [
                AccountSnapshot(
                    plaid_account_id=account["account_id"],
                    name=account.get("name") or account.get("official_name") or account["account_id"],
                    type=account.get("type"),
                    subtype=account.get("subtype"),
                    mask=account.get("mask"),
                    currency=(account.get("balances") or {}).get("iso_currency_code"),
                    current_balance=_to_decimal((account.get("balances") or {}).get("current")),
                    available_balance=_to_decimal((account.get("balances") or {}).get("available")),
                    limit=_to_decimal((account.get("balances") or {}).get("limit")),
                )
                for account in data.get("accounts", [])
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ProviderError(f"Invalid account data from provider: {e}") from e

    async def get_transactions(
        self,
        access_token: str,
        account_ids: Sequence[str],
        start_date: date,
        end_date: date,
    ) -> List[TransactionRecord]:
        """Fetch all transactions in the date range, following offset pagination"""
        records: List[TransactionRecord] = []
        offset = 0

        async with self._client() as client:
            while True:
                data = await self._post(
                    client,
                    "/transactions/get",
                    {
                        "access_token": access_token,
                        "start_date": start_date.isoformat(),
                        "end_date": end_date.isoformat(),
                        "options": {
                            "account_ids": list(account_ids),
                            "count": self.page_size,
                            "offset": offset,
                        },
                    },
                )
                page = data.get("transactions") or []
                records.extend(
                    TransactionRecord.from_provider(raw) if isinstance(raw, dict) else TransactionRecord(None, None, None, None)
                    for raw in page
                )
                offset += len(page)
                total = data.get("total_transactions", offset)
                if not page or offset >= total:
                    break

        logging.info(
            "Fetched provider transactions",
            extra={"transaction_count": len(records), "start_date": str(start_date), "end_date": str(end_date)},
        )
        return records

    async def delete_account(self, account_id: str, provider: str, access_token: str) -> DeleteAccountResult:
        """
        Revoke remote access for the connection.

        An item the provider no longer knows is already revoked, so it counts
        as success. Auth failures raise AuthError; other failures are returned
        as success=False for the caller to retry.
        """
        async with self._client() as client:
            try:
                await self._post(
                    client,
                    "/item/remove",
                    {"access_token": access_token, "account_id": account_id, "provider": provider},
                )
            except AuthError:
                raise
            except ProviderError as e:
                if e.status_code == 404 or e.error_code == "ITEM_NOT_FOUND":
                    return DeleteAccountResult(success=True, error="already revoked")
                return DeleteAccountResult(success=False, error=str(e))
        return DeleteAccountResult(success=True)
