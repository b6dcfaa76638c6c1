"""
Checkpoint persistence model.

One row per execution holding its latest resumable snapshot (variables,
step cursor, pending queue). Rewritten in a single transaction before
every step, so a crash mid-step resumes from the step that was running.
"""

from typing import Optional

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import RecordModel


class CheckpointModel(RecordModel):
    __tablename__ = "execution_checkpoints"

    # id is the execution id
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    step_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
