# Em whatscrm/routers/campaigns.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Campaign, Instance, User, CampaignStatus, UserRole
from whatscrm.core.shared import pagination, print_info
from whatscrm.schemas import dump, dump_list, CampaignOut, CampaignCreateRequest, CampaignUpdateRequest
from whatscrm.services.campaigns_service import CampaignsService, get_campaigns_service

router = APIRouter(
    prefix="/campaigns",
    tags=["Campanhas"],
    dependencies=[Depends(security.get_current_user)]
)

require_manager = security.require_role(UserRole.ADMIN, UserRole.MANAGER)

LOCKED_STATUSES = (CampaignStatus.RUNNING.value, CampaignStatus.COMPLETED.value)


def _get_campaign(db: Session, campaign_id: str, organization_id: str) -> Campaign:
    campaign = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.organization_id == organization_id
    ).first()
    if campaign is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campanha não encontrada")
    return campaign


def _check_instance(db: Session, instance_id: Optional[str], organization_id: str):
    if instance_id and not db.query(Instance.id).filter(
            Instance.id == instance_id, Instance.organization_id == organization_id
    ).first():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")


@router.get("/")
async def list_campaigns(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
        search: Optional[str] = None,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    query = db.query(Campaign).filter(Campaign.organization_id == current_user.organization_id)
    if status_filter:
        query = query.filter(Campaign.status == status_filter.value)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Campaign.name.ilike(like), Campaign.description.ilike(like)))

    total = query.count()
    campaigns = query.order_by(Campaign.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"campaigns": dump_list(CampaignOut, campaigns), "pagination": pagination(page, limit, total)}


@router.get("/stats")
async def campaign_stats(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    organization_id = current_user.organization_id
    by_status = dict(
        db.query(Campaign.status, func.count(Campaign.id))
        .filter(Campaign.organization_id == organization_id)
        .group_by(Campaign.status).all()
    )
    sent, delivered, read = db.query(
        func.coalesce(func.sum(Campaign.sent_count), 0),
        func.coalesce(func.sum(Campaign.delivered_count), 0),
        func.coalesce(func.sum(Campaign.read_count), 0),
    ).filter(Campaign.organization_id == organization_id).one()
    return {
        "total": sum(by_status.values()),
        "byStatus": {s.value: by_status.get(s.value, 0) for s in CampaignStatus},
        "totalSent": int(sent),
        "totalDelivered": int(delivered),
        "totalRead": int(read),
    }


@router.get("/{campaign_id}")
async def get_campaign(
        campaign_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return dump(CampaignOut, _get_campaign(db, campaign_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_campaign(
        body: CampaignCreateRequest,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    _check_instance(db, body.instance_id, current_user.organization_id)
    campaign = Campaign(
        **body.model_dump(),
        status=(CampaignStatus.SCHEDULED if body.scheduled_at else CampaignStatus.DRAFT).value,
        organization_id=current_user.organization_id,
        created_by_id=current_user.id,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    print_info(f"Campanha '{campaign.name}' criada por {current_user.email}")
    return dump(CampaignOut, campaign)


@router.put("/{campaign_id}")
async def update_campaign(
        campaign_id: str,
        body: CampaignUpdateRequest,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    campaign = _get_campaign(db, campaign_id, current_user.organization_id)
    if campaign.status in LOCKED_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Não é possível editar uma campanha em execução ou concluída"
        )

    data = body.model_dump(exclude_unset=True)
    _check_instance(db, data.get("instance_id"), current_user.organization_id)
    for field, value in data.items():
        if value is None and field in ("name", "message_template", "target_contacts"):
            continue
        setattr(campaign, field, value)
    if "scheduled_at" in data and campaign.status in (CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value):
        campaign.status = (CampaignStatus.SCHEDULED if campaign.scheduled_at else CampaignStatus.DRAFT).value

    db.commit()
    db.refresh(campaign)
    return dump(CampaignOut, campaign)


@router.delete("/{campaign_id}")
async def delete_campaign(
        campaign_id: str,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    campaign = _get_campaign(db, campaign_id, current_user.organization_id)
    if campaign.status == CampaignStatus.RUNNING.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Não é possível excluir uma campanha em execução")
    db.delete(campaign)
    db.commit()
    return {"message": "Campanha excluída com sucesso"}


@router.post("/{campaign_id}/execute")
async def execute_campaign(
        campaign_id: str,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db),
        service: CampaignsService = Depends(get_campaigns_service)
):
    campaign = _get_campaign(db, campaign_id, current_user.organization_id)
    outcome = await service.execute(campaign)
    return {
        "message": "Campanha executada",
        "campaign": dump(CampaignOut, outcome["campaign"]),
        "results": outcome["results"],
        "errors": outcome["errors"],
    }


@router.post("/{campaign_id}/cancel")
async def cancel_campaign(
        campaign_id: str,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db),
        service: CampaignsService = Depends(get_campaigns_service)
):
    campaign = _get_campaign(db, campaign_id, current_user.organization_id)
    return dump(CampaignOut, service.cancel(campaign))
