"""Provider account credential endpoints.

Endpoints:
    PUT    /api/v1/providers/{id}/credentials   (store or replace, write-only)
    DELETE /api/v1/providers/{id}/credentials   (disconnect)

Credentials are write-only over the API; they are never returned.
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from machina.api.dependencies import TeamContext, get_store, get_team_context
from machina.db.models import ProviderAccount
from machina.logging_config import get_logger
from machina.services import credential_service
from machina.store.protocol import RecordStore

router = APIRouter(prefix="/providers", tags=["providers"])
logger = get_logger(__name__)


class CredentialsRequest(BaseModel):
    credentials: dict[str, str] = Field(min_length=1)


async def _get_account(store: RecordStore, account_id: str, team_id: str) -> ProviderAccount:
    account = await store.get_provider_account(account_id)
    if account is None or account.team_id != team_id:
        raise HTTPException(status_code=404, detail="Provider account not found")
    return account


@router.put("/{account_id}/credentials", status_code=status.HTTP_204_NO_CONTENT)
async def put_credentials(
    account_id: str,
    body: CredentialsRequest,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> Response:
    account = await _get_account(store, account_id, team.team_id)
    await credential_service.store_credentials(store, account, body.credentials)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{account_id}/credentials", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credentials(
    account_id: str,
    team: TeamContext = Depends(get_team_context),
    store: RecordStore = Depends(get_store),
) -> Response:
    account = await _get_account(store, account_id, team.team_id)
    await credential_service.delete_credentials(store, account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
