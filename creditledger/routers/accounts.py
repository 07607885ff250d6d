from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from creditledger.deps import get_components, require_internal
from creditledger.models.domain import Account
from creditledger.services.components import Components

router = APIRouter()


class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=128)


@router.post(
    "",
    response_model=Account,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_internal)],
)
async def open_account(body: OpenAccountRequest, components: Components = Depends(get_components)):
    """Called by the identity provider at signup; grants the signup bonus. 409 if the account exists."""
    return await components.ledger.open_account(body.account_id)
