# Em whatscrm/routers/dashboard.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, User
from whatscrm.schemas import dump_list, InstanceOut
from whatscrm.services.metrics_service import MetricsService, PERIOD_DAYS, period_start

router = APIRouter(
    prefix="/dashboard",
    tags=["Dashboard"],
    dependencies=[Depends(security.get_current_user)]
)


def _period(period: str) -> str:
    return period if period in PERIOD_DAYS else "7d"


@router.get("/metrics")
async def metrics(
        period: str = Query("7d"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return MetricsService(db).dashboard_metrics(current_user.organization_id, _period(period))


@router.get("/messages-chart")
async def messages_chart(
        period: str = Query("7d"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return MetricsService(db).messages_chart(current_user.organization_id, _period(period))


@router.get("/conversations-chart")
async def conversations_chart(
        period: str = Query("7d"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return MetricsService(db).conversations_chart(current_user.organization_id, _period(period))


@router.get("/instances-status")
async def instances_status(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    result = MetricsService(db).instances_status(current_user.organization_id)
    result["instances"] = dump_list(InstanceOut, result["instances"])
    return result


@router.get("/operator-performance")
async def operator_performance(
        period: str = Query("7d"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    period = _period(period)
    operators = MetricsService(db).operator_performance(current_user.organization_id, period_start(period))
    return {"period": period, "operators": operators}
