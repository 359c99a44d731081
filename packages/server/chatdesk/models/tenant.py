"""Tenant configuration: plan quotas and channel gateway settings."""

from typing import Optional
from sqlalchemy import String, Integer, BigInteger
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.models.base import Base, TimestampMixin


class Tenant(Base, TimestampMixin):
    """One account using the CRM. Created on first configuration write."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    # Plan quotas
    max_instances: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_agents: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Base URL of the channel gateway (e.g. http://wa-backend:3001)
    gateway_base_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    gateway_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Fallback queue for inbound conversations on instances without one
    default_queue_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
