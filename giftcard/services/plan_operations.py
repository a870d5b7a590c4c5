# giftcard/services/plan_operations.py
from __future__ import annotations

from dataclasses import dataclass

from giftcard.models.plan import Plan
from giftcard.services.rewards import PlanGrant

OP_EXTEND = "extend"
OP_ASSIGN = "assign"
OP_REPLACE = "replace"

NO_PLAN_NAME = "no plan"


@dataclass(frozen=True)
class PlanOperation:
    kind: str
    current_plan_id: int | None
    current_plan_name: str
    new_plan_id: int
    new_plan_name: str
    validity_days: int
    traffic_reset: bool
    message: str
    warning: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.kind == OP_EXTEND and self.validity_days <= 0

    def preview(self) -> dict:
        return {
            "operation_type": self.kind,
            "current_plan_id": self.current_plan_id,
            "current_plan_name": self.current_plan_name,
            "new_plan_id": self.new_plan_id,
            "new_plan_name": self.new_plan_name,
            "validity_days": self.validity_days,
            "traffic_reset": self.traffic_reset,
            "warning": self.warning,
            "message": self.message,
        }

    def applied(self) -> dict:
        """What actually happened, for the redemption response."""
        if self.kind == OP_EXTEND:
            if self.is_noop:
                return {}
            return {
                "plan_action": OP_EXTEND,
                "plan_name": self.new_plan_name,
                "extended_days": self.validity_days,
                "message": f'Plan "{self.new_plan_name}" extended by {self.validity_days} days',
            }

        info = {
            "plan_action": self.kind,
            "old_plan_name": self.current_plan_name,
            "new_plan_name": self.new_plan_name,
            "validity_days": self.validity_days,
        }
        if self.traffic_reset:
            info["traffic_reset"] = True
            info["message"] = (
                f'Plan changed from "{self.current_plan_name}" to "{self.new_plan_name}", traffic has been reset'
            )
        else:
            info["message"] = f'Plan "{self.new_plan_name}" assigned'
        return info


def resolve_plan_operation(
    grant: PlanGrant,
    *,
    new_plan: Plan,
    current_plan_id: int | None,
    current_plan: Plan | None = None,
    current_plan_unlimited: bool = False,
) -> PlanOperation:
    """
    Same plan extends the expiry and never resets traffic. A different plan
    replaces the current one and resets traffic; with no current plan it is a
    plain assignment and there is nothing to reset.

    A same-plan grant on a plan that never expires has nothing to extend.
    """
    days = int(grant.validity_days or 0)

    if current_plan_id is not None and int(current_plan_id) == int(new_plan.id):
        if current_plan_unlimited:
            return PlanOperation(
                kind=OP_EXTEND,
                current_plan_id=int(current_plan_id),
                current_plan_name=current_plan.name if current_plan else new_plan.name,
                new_plan_id=int(new_plan.id),
                new_plan_name=new_plan.name,
                validity_days=0,
                traffic_reset=False,
                message=f'Plan "{new_plan.name}" never expires; there is nothing to extend',
            )

        return PlanOperation(
            kind=OP_EXTEND,
            current_plan_id=int(current_plan_id),
            current_plan_name=current_plan.name if current_plan else new_plan.name,
            new_plan_id=int(new_plan.id),
            new_plan_name=new_plan.name,
            validity_days=days,
            traffic_reset=False,
            message=f'Plan "{new_plan.name}" will be extended by {days} days; traffic is not reset',
        )

    if current_plan_id is None:
        return PlanOperation(
            kind=OP_ASSIGN,
            current_plan_id=None,
            current_plan_name=NO_PLAN_NAME,
            new_plan_id=int(new_plan.id),
            new_plan_name=new_plan.name,
            validity_days=days,
            traffic_reset=False,
            message=f'Plan "{new_plan.name}" will be assigned to you',
        )

    current_name = current_plan.name if current_plan else "current plan"
    return PlanOperation(
        kind=OP_REPLACE,
        current_plan_id=int(current_plan_id),
        current_plan_name=current_name,
        new_plan_id=int(new_plan.id),
        new_plan_name=new_plan.name,
        validity_days=days,
        traffic_reset=True,
        message=f'Plan will change from "{current_name}" to "{new_plan.name}"; traffic will be reset',
        warning=f'Redeeming replaces your current plan "{current_name}" and resets your traffic',
    )
