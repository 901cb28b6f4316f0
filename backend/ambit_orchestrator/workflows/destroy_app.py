from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional, Tuple

from ..discovery import find_workload_app
from ..machine import Machine, RunReport, Step, execute
from ..naming import assert_not_router
from ..providers.fly import FlyProvider

logger = logging.getLogger(__name__)

DestroyAppPhase = Literal["confirm", "delete_app", "complete"]

DESTROY_APP_PHASES: Tuple[Tuple[DestroyAppPhase, str], ...] = (
    ("confirm", "Confirmed"),
    ("delete_app", "Fly App Destroyed"),
)


def _decline(prompt: str) -> bool:
    return False


@dataclass
class DestroyAppContext:
    fly: FlyProvider
    app: str
    network: str
    org: str
    yes: bool = False
    confirm: Callable[[str], bool] = _decline
    fly_app_name: Optional[str] = None


def hydrate_destroy_app(ctx: DestroyAppContext) -> Step:
    workload = find_workload_app(ctx.fly, ctx.org, ctx.app, ctx.network)
    if workload:
        ctx.fly_app_name = workload.app_name
        return Step.to("confirm")
    elsewhere = find_workload_app(ctx.fly, ctx.org, ctx.app)
    if elsewhere:
        return Step.fail(
            f"App '{ctx.app}' Exists on Network '{elsewhere.network}', Not '{ctx.network}'",
            "not_found",
        )
    return Step.to("complete")


def _confirm(ctx: DestroyAppContext) -> Step:
    if not ctx.yes and not ctx.confirm(f"Destroy App '{ctx.app}' on Network '{ctx.network}'?"):
        return Step.fail("Cancelled", "cancelled")
    return Step.to("delete_app")


def _delete_app(ctx: DestroyAppContext) -> Step:
    if ctx.fly_app_name:
        ctx.fly.delete_app(ctx.fly_app_name)
    return Step.to("complete")


DESTROY_APP_MACHINE = Machine(
    name="destroy-app",
    phases=DESTROY_APP_PHASES,
    terminal="complete",
    transitions={"confirm": _confirm, "delete_app": _delete_app},
)


def destroy_app(ctx: DestroyAppContext) -> RunReport:
    assert_not_router(ctx.app)
    return execute(DESTROY_APP_MACHINE, hydrate_destroy_app, ctx)


def destroy_app_summary(ctx: DestroyAppContext) -> Dict[str, Any]:
    return {
        "destroyed": ctx.fly_app_name is not None,
        "app_name": ctx.fly_app_name or ctx.app,
        "network": ctx.network,
    }
