"""Route-level permission guards.

Usage:
    @router.put("/depth-charts/{id}")
    async def update_chart(principal: Annotated[Principal, Depends(depth_chart.can_edit)]):
        ...
"""

from collections.abc import Iterable
from typing import Annotated, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from teamguard.auth.jwt import get_current_principal
from teamguard.core.permissions import CheckMode, PermissionEvaluator, normalize_capabilities
from teamguard.core.principal import Principal
from teamguard.database import get_db
from teamguard.models import Capability


def require_permission(
    capabilities: Capability | str | Iterable[Capability | str],
    mode: CheckMode | str = CheckMode.SINGLE,
) -> Callable:
    """Dependency factory: authenticate, then check capabilities.

    Raises PermissionDeniedError / PermissionExpiredError (403) or
    EvaluationError (503); the principal is returned on success.
    """
    requested, mode = normalize_capabilities(capabilities, mode)

    async def dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
        db: Annotated[AsyncSession, Depends(get_db)],
    ) -> Principal:
        decision = await PermissionEvaluator(db).check(principal, requested, mode)
        decision.raise_for_denial()
        return principal

    dependency.__name__ = f"require_{mode.value}_" + "_".join(c.value for c in requested)
    return dependency


def require_any_permission(*capabilities: Capability | str) -> Callable:
    return require_permission(capabilities, CheckMode.ANY)


def require_all_permissions(*capabilities: Capability | str) -> Callable:
    return require_permission(capabilities, CheckMode.ALL)


class DepthChartGuards:
    """Named guards for depth chart routes."""

    can_view = staticmethod(require_permission(Capability.DEPTH_CHART_VIEW))
    can_create = staticmethod(require_permission(Capability.DEPTH_CHART_CREATE))
    can_edit = staticmethod(require_permission(Capability.DEPTH_CHART_EDIT))
    can_delete = staticmethod(require_permission(Capability.DEPTH_CHART_DELETE))
    can_manage_positions = staticmethod(require_permission(Capability.DEPTH_CHART_MANAGE_POSITIONS))
    can_assign_players = staticmethod(require_permission(Capability.PLAYER_ASSIGN))
    can_unassign_players = staticmethod(require_permission(Capability.PLAYER_UNASSIGN))
    can_view_or_edit = staticmethod(require_any_permission(
        Capability.DEPTH_CHART_VIEW,
        Capability.DEPTH_CHART_EDIT,
    ))
    can_manage = staticmethod(require_any_permission(
        Capability.DEPTH_CHART_CREATE,
        Capability.DEPTH_CHART_EDIT,
        Capability.DEPTH_CHART_DELETE,
    ))


depth_chart = DepthChartGuards()
