"""Initial schema: provider accounts, credentials, profiles, machines, deployments.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "provider_accounts",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column("provider_type", sa.String(20), nullable=False),
        sa.Column("label", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "credential_status", sa.String(20), nullable=False, server_default="unchecked"
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_provider_accounts_team_id", "provider_accounts", ["team_id"])

    op.create_table(
        "credentials",
        sa.Column(
            "provider_account_id",
            sa.String(63),
            sa.ForeignKey("provider_accounts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("encrypted_data", sa.Text(), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "firewall_profiles",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "rules", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "bootstrap_profiles",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cloud_init_template", sa.Text(), nullable=False, server_default=""),
        _timestamp("created_at"),
    )

    op.create_table(
        "ssh_keys",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("fingerprint", sa.String(255), nullable=False, server_default=""),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column(
            "provider_key_ids",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _timestamp("created_at"),
    )

    op.create_table(
        "ssh_key_secrets",
        sa.Column(
            "ssh_key_id",
            sa.String(63),
            sa.ForeignKey("ssh_keys.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("encrypted_private_key", sa.Text(), nullable=False),
    )

    op.create_table(
        "machines",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("provider_type", sa.String(20), nullable=False),
        sa.Column(
            "provider_account_id",
            sa.String(63),
            sa.ForeignKey("provider_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("provider_resource_id", sa.String(255), nullable=True),
        sa.Column("region", sa.String(63), nullable=False),
        sa.Column("size", sa.String(63), nullable=False),
        sa.Column("image", sa.String(255), nullable=False),
        sa.Column(
            "tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.Column("desired_status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("actual_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("public_ip", sa.String(45), nullable=True),
        sa.Column("private_ip", sa.String(45), nullable=True),
        sa.Column("terraform_workspace", sa.String(255), nullable=False),
        sa.Column(
            "terraform_state_status", sa.String(20), nullable=False, server_default="pending"
        ),
        sa.Column("firewall_profile_id", sa.String(63), nullable=True),
        sa.Column("bootstrap_profile_id", sa.String(63), nullable=True),
        sa.Column(
            "ssh_key_ids",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_machines_team_id", "machines", ["team_id"])
    op.create_index("ix_machines_provider_account_id", "machines", ["provider_account_id"])
    op.create_index("ix_machines_actual_status", "machines", ["actual_status"])

    op.create_table(
        "deployments",
        sa.Column("id", sa.String(63), primary_key=True),
        sa.Column("team_id", sa.String(63), nullable=False),
        sa.Column(
            "machine_id",
            sa.String(63),
            sa.ForeignKey("machines.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("state", sa.String(30), nullable=False, server_default="queued"),
        sa.Column("terraform_workspace", sa.String(255), nullable=False, server_default=""),
        sa.Column(
            "require_approval", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("plan_summary", postgresql.JSONB(), nullable=True),
        sa.Column("plan_artifact", sa.String(1000), nullable=True),
        sa.Column("outputs", postgresql.JSONB(), nullable=True),
        sa.Column(
            "logs", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("initiated_by", sa.String(255), nullable=False, server_default="system"),
        _timestamp("created_at"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_deployments_machine_id", "deployments", ["machine_id"])
    op.create_index("ix_deployments_state", "deployments", ["state"])
    op.create_index(
        "uq_deployments_active_machine",
        "deployments",
        ["machine_id"],
        unique=True,
        postgresql_where=sa.text("state NOT IN ('succeeded', 'failed', 'cancelled')"),
    )


def downgrade() -> None:
    op.drop_table("deployments")
    op.drop_table("machines")
    op.drop_table("ssh_key_secrets")
    op.drop_table("ssh_keys")
    op.drop_table("bootstrap_profiles")
    op.drop_table("firewall_profiles")
    op.drop_table("credentials")
    op.drop_table("provider_accounts")
