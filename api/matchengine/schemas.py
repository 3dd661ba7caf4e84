from typing import Any

from pydantic import BaseModel, Field


class AssignRequest(BaseModel):
    user_id: str
    group_id: str
    expected_version: int | None = None
    note: str | None = None


class MoveRequest(BaseModel):
    user_id: str
    from_group_id: str
    to_group_id: str
    from_version: int | None = None
    to_version: int | None = None
    note: str | None = None


class RemoveRequest(BaseModel):
    user_id: str
    group_id: str
    expected_version: int | None = None
    allow_undersized: bool = False
    reason: str | None = None


class CreateGroupRequest(BaseModel):
    member_ids: list[str] = Field(default_factory=list)
    min_size: int | None = None
    max_size: int | None = None
    note: str | None = None


class BulkAssignItem(BaseModel):
    user_id: str
    group_id: str
    expected_version: int | None = None
    note: str | None = None


class BulkAssignRequest(BaseModel):
    assignments: list[BulkAssignItem] = Field(default_factory=list)


class BulkAssignResult(BaseModel):
    user_id: str
    group_id: str
    ok: bool
    version: int | None = None
    error: str | None = None
    detail: str | None = None


class BulkAssignResponse(BaseModel):
    results: list[BulkAssignResult]
    success_count: int
    failed_count: int


class UnassignedResponse(BaseModel):
    total: int
    participants: list[dict[str, Any]]
