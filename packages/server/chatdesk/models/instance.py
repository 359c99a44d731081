"""Channel instance model: one paired messaging endpoint (e.g. a phone number)."""

from typing import Optional
from sqlalchemy import BigInteger, String, Text, Index, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.models.base import Base, PrefixedIdMixin, TimestampMixin


INSTANCE_UNINITIALIZED = "uninitialized"
INSTANCE_GENERATING_CODE = "generating_code"
INSTANCE_AWAITING_SCAN = "awaiting_scan"
INSTANCE_CONNECTED = "connected"
INSTANCE_FAILED = "failed"

INSTANCE_STATUSES = (
    INSTANCE_UNINITIALIZED,
    INSTANCE_GENERATING_CODE,
    INSTANCE_AWAITING_SCAN,
    INSTANCE_CONNECTED,
    INSTANCE_FAILED,
)

# Statuses that hold a slot of the tenant's instance quota
QUOTA_HOLDING_STATUSES = (
    INSTANCE_GENERATING_CODE,
    INSTANCE_AWAITING_SCAN,
    INSTANCE_CONNECTED,
)

PAIRING_STATUSES = (INSTANCE_GENERATING_CODE, INSTANCE_AWAITING_SCAN)


class Instance(Base, PrefixedIdMixin, TimestampMixin):
    """A channel instance and its pairing state."""

    _id_prefix = "inst_"

    __tablename__ = "instances"
    __table_args__ = (
        Index("idx_instances_tenant_status", "tenant_id", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=INSTANCE_UNINITIALIZED
    )
    # E.g. "baileys", "evolution", "zapi"
    provider_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="baileys")
    # Set only once connected
    phone_identifier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Latest QR / pairing code while awaiting_scan
    pairing_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pairing_started_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_queue_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("queues.id", ondelete="SET NULL"), nullable=True
    )
