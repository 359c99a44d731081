"""Per-tenant auto-reply configuration (one row per tenant)."""

from sqlalchemy import Boolean, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.models.base import Base, TimestampMixin


class AutoReplySettings(Base, TimestampMixin):
    __tablename__ = "auto_reply_settings"

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
