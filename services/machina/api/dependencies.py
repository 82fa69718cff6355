"""FastAPI dependencies for team context and service access.

Identity is established upstream; requests arrive with the acting team in
X-Team-Id and the acting user in X-User-Id. Every machine, deployment and
provider account lookup is scoped to that team.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from machina.logging_config import get_logger
from machina.services.deployment_orchestrator import DeploymentOrchestrator
from machina.services.deployment_orchestrator import get_orchestrator as _get_orchestrator
from machina.store import get_record_store
from machina.store.protocol import RecordStore

logger = get_logger(__name__)


@dataclass
class TeamContext:
    """The team and user a request acts for."""

    team_id: str
    user_id: str


async def get_team_context(
    x_team_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> TeamContext:
    if not x_team_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Team context required",
        )
    return TeamContext(team_id=x_team_id, user_id=x_user_id or "system")


def get_store() -> RecordStore:
    return get_record_store()


def get_orchestrator() -> DeploymentOrchestrator:
    return _get_orchestrator()
