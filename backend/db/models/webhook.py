"""Inbound webhook registrations."""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import RecordModel


class WebhookModel(RecordModel):
    __tablename__ = "webhooks"

    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
