# Em whatscrm/routers/organizations.py
import copy
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import (
    get_db, utcnow, Contact, Conversation, Instance, Message, Organization, User,
    ConversationStatus, InstanceStatus, UserRole
)
from whatscrm.schemas import dump, OrganizationOut, OrganizationUpdateRequest

router = APIRouter(
    prefix="/organizations",
    tags=["Organizações"],
    dependencies=[Depends(security.get_current_user)]
)


def mask_settings(settings: dict) -> dict:
    """Nunca devolve a apiKey da Evolution em texto puro."""
    masked = copy.deepcopy(settings or {})
    evolution = masked.get("evolution")
    if isinstance(evolution, dict) and evolution.get("apiKey"):
        evolution["apiKey"] = "***"
    return masked


def organization_payload(db: Session, organization: Organization) -> dict:
    data = dump(OrganizationOut, organization)
    data["settings"] = mask_settings(organization.settings)
    data["_count"] = {
        "users": db.query(User).filter(User.organization_id == organization.id).count(),
        "instances": db.query(Instance).filter(Instance.organization_id == organization.id).count(),
        "contacts": db.query(Contact).filter(Contact.organization_id == organization.id).count(),
        "conversations": db.query(Conversation).filter(Conversation.organization_id == organization.id).count(),
    }
    return data


@router.get("/current")
async def get_current_organization(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return organization_payload(db, current_user.organization)


@router.put("/current")
async def update_current_organization(
        body: OrganizationUpdateRequest,
        current_user: User = Depends(security.require_role(UserRole.ADMIN)),
        db: Session = Depends(get_db)
):
    organization = current_user.organization
    data = body.model_dump(exclude_unset=True)

    if data.get("domain"):
        taken = db.query(Organization.id).filter(
            Organization.domain == data["domain"],
            Organization.id != organization.id
        ).first()
        if taken:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Domínio já está em uso")

    for field, value in data.items():
        if field == "name" and not value:
            continue
        setattr(organization, field, value)
    db.commit()
    db.refresh(organization)
    return organization_payload(db, organization)


@router.get("/stats")
async def organization_stats(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    organization_id = current_user.organization_id
    now = utcnow()
    week_ago = now - timedelta(days=7)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    users = db.query(User).filter(User.organization_id == organization_id)
    instances = db.query(Instance).filter(Instance.organization_id == organization_id)
    conversations = db.query(Conversation).filter(Conversation.organization_id == organization_id)
    messages = db.query(Message).filter(Message.organization_id == organization_id)

    return {
        "totalUsers": users.count(),
        "activeUsers": users.filter(User.last_login >= week_ago).count(),
        "totalInstances": instances.count(),
        "connectedInstances": instances.filter(Instance.status == InstanceStatus.CONNECTED.value).count(),
        "totalContacts": db.query(Contact).filter(Contact.organization_id == organization_id).count(),
        "totalConversations": conversations.count(),
        "openConversations": conversations.filter(Conversation.status == ConversationStatus.OPEN.value).count(),
        "totalMessages": messages.count(),
        "messagesToday": messages.filter(Message.created_at >= today).count(),
    }
