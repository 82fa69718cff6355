"""
SQLAlchemy database models for Machina.

All models use:
- Prefixed string primary keys built on UUIDv7 (time-sortable), e.g. "mach-…"
- snake_case column names
- Plural table names
- TIMESTAMPTZ with UTC for all timestamps
- Statuses stored as strings holding the values of the enums below
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    import time

    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def new_id(prefix: str) -> str:
    """Build a prefixed identifier, e.g. new_id("mach") -> "mach-0190…"."""
    return f"{prefix}-{generate_uuid7().hex}"


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


# --- Enumerations ---


class MachineStatus(StrEnum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    REBOOTING = "rebooting"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    ERROR = "error"


class TerraformStateStatus(StrEnum):
    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    UNKNOWN = "unknown"
    PENDING = "pending"


class DeploymentType(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    REBOOT = "reboot"
    RESTART_SERVICE = "restart_service"
    REFRESH = "refresh"


class DeploymentState(StrEnum):
    QUEUED = "queued"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LogLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogSource(StrEnum):
    SYSTEM = "system"
    TERRAFORM = "terraform"
    PROVIDER = "provider"


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# --- Provider Accounts & Credentials ---


class ProviderAccount(Base):
    """A team's connection to one cloud provider account.

    Secret material never lives here; it is kept vault-encrypted in the
    credentials table, keyed by this account's id.
    """

    __tablename__ = "provider_accounts"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "pa-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    provider_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # digitalocean, aws, gcp, hetzner
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    credential_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="unchecked"
    )  # valid, invalid, expired, unchecked

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_provider_accounts_team_id", "team_id"),
    )


class Credential(Base):
    """Vault ciphertext for one provider account.

    Format is "ivHex:authTagHex:cipherHex", bound to (team_id, account id)
    through the AEAD associated data. Replaced, never edited in place.
    """

    __tablename__ = "credentials"

    provider_account_id: Mapped[str] = mapped_column(
        String(63),
        ForeignKey("provider_accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    encrypted_data: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# --- Provisioning Inputs ---


class FirewallProfile(Base):
    """Reusable set of firewall rules applied at machine creation."""

    __tablename__ = "firewall_profiles"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "fw-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # [{direction, protocol, port_range_start, port_range_end, source_addresses}]
    rules: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )


class BootstrapProfile(Base):
    """Cloud-init template passed to a machine as its boot-time user data."""

    __tablename__ = "bootstrap_profiles"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "bp-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    cloud_init_template: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class SSHKey(Base):
    """Public SSH key and the ids it has been synced under at each provider."""

    __tablename__ = "ssh_keys"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "key-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    # {"digitalocean": "12345678", "aws": "key-0abc123"}
    provider_key_ids: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class SSHKeySecret(Base):
    """Vault ciphertext of an SSH private key (scope = ssh key id)."""

    __tablename__ = "ssh_key_secrets"

    ssh_key_id: Mapped[str] = mapped_column(
        String(63),
        ForeignKey("ssh_keys.id", ondelete="CASCADE"),
        primary_key=True,
    )
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)


# --- Machines ---


class Machine(Base):
    """A tracked compute instance.

    actual_status is written only by the deployment orchestrator and the
    provider reconciler. provider_resource_id stays empty until a create
    has produced a resource.
    """

    __tablename__ = "machines"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "mach-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_account_id: Mapped[str] = mapped_column(
        String(63),
        ForeignKey("provider_accounts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    provider_resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    region: Mapped[str] = mapped_column(String(63), nullable=False)
    size: Mapped[str] = mapped_column(String(63), nullable=False)
    image: Mapped[str] = mapped_column(String(255), nullable=False)
    tags: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)

    desired_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MachineStatus.RUNNING
    )
    actual_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MachineStatus.PENDING
    )

    public_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    private_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)

    terraform_workspace: Mapped[str] = mapped_column(String(255), nullable=False)
    terraform_state_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TerraformStateStatus.PENDING
    )

    firewall_profile_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    bootstrap_profile_id: Mapped[str | None] = mapped_column(String(63), nullable=True)
    ssh_key_ids: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_machines_team_id", "team_id"),
        Index("ix_machines_provider_account_id", "provider_account_id"),
        Index("ix_machines_actual_status", "actual_status"),
    )


# --- Deployments ---


class Deployment(Base):
    """One execution attempt against one machine.

    State machine: queued → planning → [awaiting_approval →] applying →
    succeeded | failed. Cancel from queued/planning/awaiting_approval.
    Never deleted; terminal rows are the audit trail.
    """

    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)  # "deploy-{uuid7}"
    team_id: Mapped[str] = mapped_column(String(63), nullable=False)
    machine_id: Mapped[str] = mapped_column(
        String(63),
        ForeignKey("machines.id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    state: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DeploymentState.QUEUED
    )
    terraform_workspace: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    require_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # {resources_to_add, resources_to_change, resources_to_destroy, resource_changes: [...]}
    plan_summary: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    plan_artifact: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    outputs: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    # [{deployment_id, timestamp, level, source, message}]
    logs: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, default=list, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_deployments_machine_id", "machine_id"),
        Index("ix_deployments_state", "state"),
        # At most one non-terminal deployment per machine
        Index(
            "uq_deployments_active_machine",
            "machine_id",
            unique=True,
            postgresql_where=text("state NOT IN ('succeeded', 'failed', 'cancelled')"),
        ),
    )
