"""Schemas shared by the list endpoints and the error handlers."""

from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")


class ErrorResponse(BaseModel):
    """Body of every error response."""

    detail: Union[str, list[dict[str, Any]]] = Field(
        description="Error message, or the field errors of a rejected request body"
    )
    type: str = Field(description="Exception class name, e.g. WorkflowNotFound")
    request_id: Optional[str] = None


def paginate(items: Sequence[Any], page: int, per_page: int) -> dict:
    """Slice an already-sorted sequence into the {items,total,page,per_page,pages} envelope."""
    total = len(items)
    start = (page - 1) * per_page
    return {
        "items": list(items[start:start + per_page]),
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": -(-total // per_page),
    }
