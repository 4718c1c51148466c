from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import analytics
from dependencies import get_actor, get_db, require_admin
from models import Actor, DamageCostReport, ToolUsage

router = APIRouter()


@router.get("/analytics/status-summary")
def status_summary_api(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> dict[str, int]:
    return analytics.status_summary(db)


@router.get("/analytics/damage-costs", response_model=DamageCostReport)
def damage_costs_api(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return analytics.damage_costs(db)


@router.get("/analytics/usage", response_model=list[ToolUsage])
def usage_report_api(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return analytics.usage_report(db)
