from typing import Any

from fastapi import APIRouter, Depends

from ..auth.admin_deps import require_admin_role
from ..deps import actor_id_from_admin, get_coordinator, get_override_service
from ..schemas import (
    AssignRequest,
    BulkAssignRequest,
    BulkAssignResponse,
    CreateGroupRequest,
    MoveRequest,
    RemoveRequest,
    UnassignedResponse,
)
from ..services.coordinator import MatchingCoordinator
from ..services.overrides import ManualOverrideService

router = APIRouter(prefix="/events/{event_id}/matching")
sweep_router = APIRouter(prefix="/matching")


@sweep_router.post("/auto-trigger")
def auto_trigger_matching(
    _admin_user: dict[str, Any] = Depends(require_admin_role("admin")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return coordinator.auto_trigger_due_events()


@router.get("/health")
def matching_health(event_id: str) -> dict[str, str]:
    return {"status": "ok", "event_id": event_id}


@router.post("/preview")
def preview_matching(
    event_id: str,
    admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    outcome = coordinator.preview_matching(event_id, actor_id=actor_id_from_admin(admin_user))
    return outcome.to_dict()


@router.post("/trigger")
def trigger_matching(
    event_id: str,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    outcome = coordinator.trigger_matching(event_id, actor_id=actor_id_from_admin(admin_user))
    return outcome.to_dict()


@router.get("/results")
def matching_results(
    event_id: str,
    _admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return coordinator.get_results(event_id).to_dict()


@router.get("/history")
def matching_history(
    event_id: str,
    _admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return coordinator.get_history(event_id)


@router.get("/unassigned", response_model=UnassignedResponse)
def matching_unassigned(
    event_id: str,
    _admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return coordinator.list_unassigned(event_id)


@router.get("/eligibility")
def matching_eligibility_counts(
    event_id: str,
    _admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"event_id": event_id, "counts": coordinator.eligibility_debug_counts(event_id)}


@router.get("/users/{user_id}")
def matching_user_group(
    event_id: str,
    user_id: str,
    _admin_user: dict[str, Any] = Depends(require_admin_role("viewer")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return {"group": coordinator.get_user_group(event_id, user_id).to_dict()}


@router.post("/assign")
def assign_user(
    event_id: str,
    payload: AssignRequest,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    overrides: ManualOverrideService = Depends(get_override_service),
) -> dict[str, Any]:
    group = overrides.assign_user_to_group(
        event_id,
        payload.user_id,
        payload.group_id,
        actor_id=actor_id_from_admin(admin_user),
        expected_version=payload.expected_version,
        note=payload.note,
    )
    return {"group": group.to_dict()}


@router.post("/move")
def move_user(
    event_id: str,
    payload: MoveRequest,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    overrides: ManualOverrideService = Depends(get_override_service),
) -> dict[str, Any]:
    source, target = overrides.move_user_between_groups(
        event_id,
        payload.user_id,
        payload.from_group_id,
        payload.to_group_id,
        actor_id=actor_id_from_admin(admin_user),
        from_version=payload.from_version,
        to_version=payload.to_version,
        note=payload.note,
    )
    return {"from_group": source.to_dict(), "to_group": target.to_dict()}


@router.post("/remove")
def remove_user(
    event_id: str,
    payload: RemoveRequest,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    overrides: ManualOverrideService = Depends(get_override_service),
) -> dict[str, Any]:
    group = overrides.remove_user_from_group(
        event_id,
        payload.user_id,
        payload.group_id,
        actor_id=actor_id_from_admin(admin_user),
        expected_version=payload.expected_version,
        allow_undersized=payload.allow_undersized,
        reason=payload.reason,
    )
    return {"group": group.to_dict()}


@router.post("/groups")
def create_group(
    event_id: str,
    payload: CreateGroupRequest,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    overrides: ManualOverrideService = Depends(get_override_service),
) -> dict[str, Any]:
    group = overrides.create_manual_group(
        event_id,
        payload.member_ids,
        actor_id=actor_id_from_admin(admin_user),
        min_size=payload.min_size,
        max_size=payload.max_size,
        note=payload.note,
    )
    return {"group": group.to_dict()}


@router.post("/bulk-assign", response_model=BulkAssignResponse)
def bulk_assign(
    event_id: str,
    payload: BulkAssignRequest,
    admin_user: dict[str, Any] = Depends(require_admin_role("operator")),
    overrides: ManualOverrideService = Depends(get_override_service),
) -> dict[str, Any]:
    return overrides.bulk_assign_users(
        event_id,
        [item.model_dump() for item in payload.assignments],
        actor_id=actor_id_from_admin(admin_user),
    )


@router.post("/invalidate")
def invalidate_run(
    event_id: str,
    admin_user: dict[str, Any] = Depends(require_admin_role("admin")),
    coordinator: MatchingCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    run = coordinator.invalidate_run(event_id, actor_id=actor_id_from_admin(admin_user))
    return {"run": run.to_dict()}
