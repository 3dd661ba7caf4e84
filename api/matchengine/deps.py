from typing import Any

from fastapi import Request

from matchengine.services.coordinator import MatchingCoordinator
from matchengine.services.overrides import ManualOverrideService


def get_coordinator(request: Request) -> MatchingCoordinator:
    return request.app.state.coordinator


def get_override_service(request: Request) -> ManualOverrideService:
    return request.app.state.overrides


def actor_id_from_admin(admin_user: dict[str, Any]) -> str | None:
    value = admin_user.get("id")
    return str(value) if value else None
