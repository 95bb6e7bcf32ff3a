from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "no_active_route",
        "route_not_found",
        "routing_graph_unavailable",
        "road_source_unavailable",
        "traffic_source_unavailable",
        "invalid_road_segment",
    }
)


@dataclass(eq=False)
class SmartRouteError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class NoActiveRouteError(SmartRouteError):
    def __init__(self, user_id: str) -> None:
        super().__init__(
            reason_code="no_active_route",
            message=f"No active route for user {user_id!r}.",
            details={"user_id": user_id},
        )


class RouteNotFoundError(SmartRouteError):
    def __init__(self, route_id: str) -> None:
        super().__init__(
            reason_code="route_not_found",
            message=f"Route {route_id!r} is unknown or has expired.",
            details={"route_id": route_id},
        )


def normalize_reason_code(reason_code: str, *, default: str = "routing_graph_unavailable") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
