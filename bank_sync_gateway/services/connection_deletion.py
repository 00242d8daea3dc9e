"""Revoke provider access, then remove the connection and everything it owns"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from bank_sync_gateway.domain.exceptions import ConnectionNotFoundError, ProviderError
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository


async def delete_connection(
    db: Session,
    provider_client,
    reference_id: str,
    provider: str,
    access_token: str,
) -> Dict[str, Any]:
    """
    Delete a connection by local id or provider item id.

    Local rows are removed only after the provider confirms revocation (or
    reports the item as already gone). A missing connection raises
    ConnectionNotFoundError; an AuthError from the provider propagates
    unchanged. Both are terminal for the task queue. Any other provider
    failure raises a retryable ProviderError.
    """
    repo = ConnectionRepository(db)
    connection = repo.find_by_reference(reference_id)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {reference_id} not found")
    connection_id = connection.id
    item_id = connection.item_id
    # Release the read transaction before the provider round trip
    db.commit()

    result = await provider_client.delete_account(item_id, provider, access_token)
    if not result.success:
        raise ProviderError(f"Provider revocation failed for {reference_id}: {result.error}")

    deleted = repo.delete_connection_cascade(connection_id)
    db.commit()

    logging.info(
        "Connection deleted",
        extra={"connection_id": connection_id, "provider": provider, "step": "delete", "revocation": result.error or "ok"},
    )
    if not deleted:
        return {"success": True, "message": f"Connection {reference_id} was already removed"}
    return {"success": True, "message": f"Connection {reference_id} deleted"}
