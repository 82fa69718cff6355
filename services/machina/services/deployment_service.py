"""Deployment state machine and lifecycle management service."""

from machina.db.models import (
    Deployment,
    DeploymentState,
    DeploymentType,
    Machine,
    new_id,
    utc_now,
)
from machina.logging_config import get_logger
from machina.store.protocol import DeploymentFilter, RecordConflictError, RecordStore

logger = get_logger(__name__)

# Valid state transitions
VALID_TRANSITIONS: dict[DeploymentState, frozenset[DeploymentState]] = {
    DeploymentState.QUEUED: frozenset(
        {
            DeploymentState.PLANNING,
            DeploymentState.APPLYING,
            DeploymentState.CANCELLED,
            DeploymentState.FAILED,
        }
    ),
    DeploymentState.PLANNING: frozenset(
        {
            DeploymentState.APPLYING,
            DeploymentState.AWAITING_APPROVAL,
            DeploymentState.CANCELLED,
            DeploymentState.FAILED,
        }
    ),
    DeploymentState.AWAITING_APPROVAL: frozenset(
        {
            DeploymentState.APPLYING,
            DeploymentState.CANCELLED,
            DeploymentState.FAILED,
        }
    ),
    DeploymentState.APPLYING: frozenset({DeploymentState.SUCCEEDED, DeploymentState.FAILED}),
}

TERMINAL_STATES = frozenset(
    {DeploymentState.SUCCEEDED, DeploymentState.FAILED, DeploymentState.CANCELLED}
)

CANCELLABLE_STATES = frozenset(
    {DeploymentState.QUEUED, DeploymentState.PLANNING, DeploymentState.AWAITING_APPROVAL}
)


class InvalidTransitionError(ValueError):
    def __init__(self, deployment_id: str, current: str, target: str) -> None:
        self.deployment_id = deployment_id
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition for {deployment_id}: {current} → {target}")


class DeploymentNotFoundError(LookupError):
    pass


class DeploymentConflictError(Exception):
    """The machine already has a non-terminal deployment."""

    def __init__(self, machine_id: str, active_deployment_id: str | None = None) -> None:
        self.machine_id = machine_id
        self.active_deployment_id = active_deployment_id
        detail = f" ({active_deployment_id})" if active_deployment_id else ""
        super().__init__(f"Machine {machine_id} already has an active deployment{detail}")


def can_transition(current: str, target: str) -> bool:
    """Check if a state transition is valid."""
    if current in TERMINAL_STATES:
        return False
    # StrEnum members hash like their values, so plain strings look up fine
    return target in VALID_TRANSITIONS.get(current, frozenset())  # type: ignore[call-overload]


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


async def create_deployment(
    store: RecordStore,
    machine: Machine,
    deployment_type: DeploymentType,
    initiated_by: str = "system",
    require_approval: bool = False,
) -> Deployment:
    """Create a queued deployment, rejecting a second active one for the machine."""
    active = await store.find_active_deployment(machine.id)
    if active is not None:
        raise DeploymentConflictError(machine.id, active.id)

    deployment = Deployment(
        id=new_id("deploy"),
        team_id=machine.team_id,
        machine_id=machine.id,
        type=deployment_type,
        state=DeploymentState.QUEUED,
        terraform_workspace=machine.terraform_workspace,
        require_approval=require_approval,
        plan_summary=None,
        plan_artifact=None,
        outputs=None,
        logs=[],
        error_message="",
        initiated_by=initiated_by,
        created_at=utc_now(),
        started_at=None,
        finished_at=None,
    )
    try:
        await store.insert_deployment(deployment)
    except RecordConflictError as e:
        raise DeploymentConflictError(machine.id) from e

    logger.info(
        "Deployment created",
        deployment_id=deployment.id,
        machine_id=machine.id,
        type=str(deployment_type),
        require_approval=require_approval,
    )
    return deployment


async def transition_deployment(
    store: RecordStore,
    deployment_id: str,
    target: DeploymentState,
    error_message: str = "",
    **fields: object,
) -> Deployment:
    """Move a deployment to target, re-reading its current state first.

    The write only lands if the state is unchanged since the read, so a
    concurrent cancellation surfaces here as InvalidTransitionError.
    """
    current = await store.get_deployment(deployment_id)
    if current is None:
        raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
    if not can_transition(current.state, target):
        raise InvalidTransitionError(deployment_id, current.state, target)

    now = utc_now()
    updates: dict[str, object] = {"state": target, **fields}
    if current.started_at is None:
        updates["started_at"] = now
    if target in TERMINAL_STATES:
        updates["finished_at"] = now
    if error_message:
        updates["error_message"] = error_message

    updated = await store.update_deployment_if_state(deployment_id, current.state, **updates)
    if updated is None:
        latest = await store.get_deployment(deployment_id)
        raise InvalidTransitionError(
            deployment_id, latest.state if latest else current.state, target
        )

    logger.info(
        "Deployment transitioned",
        deployment_id=deployment_id,
        from_state=current.state,
        to_state=str(target),
    )
    return updated


async def get_deployment(
    store: RecordStore, deployment_id: str, team_id: str | None = None
) -> Deployment:
    """Fetch a deployment, scoped to team_id when given."""
    deployment = await store.get_deployment(deployment_id)
    if deployment is None or (team_id is not None and deployment.team_id != team_id):
        raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
    return deployment


async def list_deployments(
    store: RecordStore,
    team_id: str,
    machine_id: str | None = None,
    deployment_type: str | None = None,
    state: str | None = None,
    page_number: int = 1,
    page_size: int = 20,
) -> list[Deployment]:
    filters = DeploymentFilter(
        team_id=team_id, machine_id=machine_id, type=deployment_type, state=state
    )
    return await store.list_deployments(filters, page_number=page_number, page_size=page_size)


async def cancel_deployment(
    store: RecordStore, deployment_id: str, team_id: str | None = None
) -> Deployment:
    """Cancel a deployment that has not started applying."""
    deployment = await get_deployment(store, deployment_id, team_id)
    if deployment.state not in CANCELLABLE_STATES:
        raise InvalidTransitionError(deployment_id, deployment.state, DeploymentState.CANCELLED)
    return await transition_deployment(store, deployment_id, DeploymentState.CANCELLED)


async def approve_deployment(
    store: RecordStore, deployment_id: str, team_id: str | None = None
) -> Deployment:
    """Accept a reviewed plan, moving awaiting_approval to applying."""
    deployment = await get_deployment(store, deployment_id, team_id)
    if deployment.state != DeploymentState.AWAITING_APPROVAL:
        raise InvalidTransitionError(deployment_id, deployment.state, DeploymentState.APPLYING)
    return await transition_deployment(store, deployment_id, DeploymentState.APPLYING)
