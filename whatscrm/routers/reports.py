# Em whatscrm/routers/reports.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Report, User, ReportType
from whatscrm.core.shared import pagination, print_success
from whatscrm.schemas import dump, dump_list, ReportOut, ReportCreateRequest, ReportUpdateRequest
from whatscrm.services.metrics_service import MetricsService

router = APIRouter(
    prefix="/reports",
    tags=["Relatórios"],
    dependencies=[Depends(security.get_current_user)]
)


def _get_report(db: Session, report_id: str, organization_id: str) -> Report:
    report = db.query(Report).filter(
        Report.id == report_id,
        Report.organization_id == organization_id
    ).first()
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Relatório não encontrado")
    return report


@router.get("/")
async def list_reports(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        report_type: Optional[ReportType] = Query(None, alias="type"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    query = db.query(Report).filter(Report.organization_id == current_user.organization_id)
    if report_type:
        query = query.filter(Report.type == report_type.value)
    total = query.count()
    reports = query.order_by(Report.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"reports": dump_list(ReportOut, reports), "pagination": pagination(page, limit, total)}


@router.get("/{report_id}")
async def get_report(
        report_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return dump(ReportOut, _get_report(db, report_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_report(
        body: ReportCreateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    report = Report(
        name=body.name,
        type=body.type.value,
        filters=body.filters,
        organization_id=current_user.organization_id,
        created_by_id=current_user.id,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    return dump(ReportOut, report)


@router.put("/{report_id}")
async def update_report(
        report_id: str,
        body: ReportUpdateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    report = _get_report(db, report_id, current_user.organization_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        setattr(report, field, value.value if hasattr(value, "value") else value)
    db.commit()
    db.refresh(report)
    return dump(ReportOut, report)


@router.delete("/{report_id}")
async def delete_report(
        report_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    report = _get_report(db, report_id, current_user.organization_id)
    db.delete(report)
    db.commit()
    return {"message": "Relatório excluído com sucesso"}


@router.post("/{report_id}/generate")
async def generate_report(
        report_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    report = _get_report(db, report_id, current_user.organization_id)
    report.data = MetricsService(db).generate_report(report.organization_id, report.type, report.filters or {})
    db.commit()
    db.refresh(report)
    print_success(f"Relatório {report.name} ({report.type}) gerado")
    return dump(ReportOut, report)
