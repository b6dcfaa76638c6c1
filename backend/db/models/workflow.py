"""Workflow definition table."""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import RecordModel


class WorkflowModel(RecordModel):
    """Stored workflow definition.

    Attributes:
        id: Workflow id
        organization_id: Owning organization
        status: draft, active or paused
        data: Full definition (steps, variables, trigger)
    """

    __tablename__ = "workflows"

    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
