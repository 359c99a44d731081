"""create chatdesk schema

Revision ID: a1c0d2e3f401
Revises:
Create Date: 2026-03-02 10:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c0d2e3f401"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tenants
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("max_instances", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_agents", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("gateway_base_url", sa.String(512), nullable=True),
        sa.Column("gateway_token", sa.String(512), nullable=True),
        sa.Column("default_queue_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )

    # Queues
    op.create_table(
        "queues",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("color", sa.String(32), nullable=False, server_default="bg-gray-500"),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_queues_tenant_name"),
    )

    # Agents
    op.create_table(
        "agents",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("identity_ref", sa.String(256), nullable=False),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("presence", sa.String(16), nullable=False, server_default="offline"),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("tenant_id", "identity_ref", name="uq_agents_tenant_identity"),
    )

    # Contacts
    op.create_table(
        "contacts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_address", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "external_address", name="uq_contacts_tenant_address"
        ),
    )
    op.create_index("idx_contacts_tenant", "contacts", ["tenant_id"])

    # Instances
    op.create_table(
        "instances",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="uninitialized"),
        sa.Column("provider_kind", sa.String(32), nullable=False, server_default="baileys"),
        sa.Column("phone_identifier", sa.String(64), nullable=True),
        sa.Column("pairing_code", sa.Text(), nullable=True),
        sa.Column("pairing_started_at", sa.BigInteger(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "default_queue_id",
            sa.String(64),
            sa.ForeignKey("queues.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("idx_instances_tenant_status", "instances", ["tenant_id", "status"])

    # Tickets
    op.create_table(
        "tickets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.String(64),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("instance_id", sa.String(64), sa.ForeignKey("instances.id"), nullable=False),
        sa.Column(
            "queue_id",
            sa.String(64),
            sa.ForeignKey("queues.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("owner_agent_id", sa.String(64), sa.ForeignKey("agents.id"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("last_message_body", sa.Text(), nullable=True),
        sa.Column("last_message_direction", sa.String(16), nullable=True),
        sa.Column("last_message_at", sa.BigInteger(), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("closed_at", sa.BigInteger(), nullable=True),
        sa.Column("closed_by_agent_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index(
        "idx_tickets_tenant_status_updated", "tickets", ["tenant_id", "status", "updated_at"]
    )
    op.create_index("idx_tickets_owner", "tickets", ["owner_agent_id"])
    op.create_index("idx_tickets_queue", "tickets", ["queue_id"])
    # At most one active ticket per contact
    op.create_index(
        "uq_tickets_contact_active",
        "tickets",
        ["contact_id"],
        unique=True,
        sqlite_where=sa.text("status != 'closed'"),
        postgresql_where=sa.text("status != 'closed'"),
    )

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "ticket_id",
            sa.String(64),
            sa.ForeignKey("tickets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="sent"),
        sa.Column(
            "is_ai_generated", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("agent_id", sa.String(64), nullable=True),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        sa.Column("external_id", sa.String(128), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index(
        "idx_messages_ticket_created", "messages", ["ticket_id", "created_at", "id"]
    )
    op.create_index("idx_messages_ticket_updated", "messages", ["ticket_id", "updated_at"])
    op.create_index("ix_messages_external_id", "messages", ["external_id"])

    # Auto-reply settings (one row per tenant)
    op.create_table(
        "auto_reply_settings",
        sa.Column(
            "tenant_id",
            sa.String(64),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("temperature", sa.Float(), nullable=False, server_default="0.7"),
        sa.Column("system_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("auto_reply_settings")
    op.drop_index("ix_messages_external_id", table_name="messages")
    op.drop_index("idx_messages_ticket_updated", table_name="messages")
    op.drop_index("idx_messages_ticket_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("uq_tickets_contact_active", table_name="tickets")
    op.drop_index("idx_tickets_queue", table_name="tickets")
    op.drop_index("idx_tickets_owner", table_name="tickets")
    op.drop_index("idx_tickets_tenant_status_updated", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("idx_instances_tenant_status", table_name="instances")
    op.drop_table("instances")
    op.drop_index("idx_contacts_tenant", table_name="contacts")
    op.drop_table("contacts")
    op.drop_table("agents")
    op.drop_table("queues")
    op.drop_table("tenants")
