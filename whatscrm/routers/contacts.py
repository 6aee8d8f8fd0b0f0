# Em whatscrm/routers/contacts.py
import csv
import io
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Contact, Conversation, Message, User
from whatscrm.core.shared import clean_phone, pagination, print_info
from whatscrm.schemas import (
    dump, dump_list, ContactOut, ConversationOut, MessageOut,
    ContactCreateRequest, ContactUpdateRequest, ContactImportRequest
)

router = APIRouter(
    prefix="/contacts",
    tags=["Contatos"],
    dependencies=[Depends(security.get_current_user)]
)

MAX_IMPORT = 1000
CSV_HEADER = ["Nome", "Telefone", "Email", "Empresa", "Tags", "Notas", "Data de Criação"]


def _get_contact(db: Session, contact_id: str, organization_id: str) -> Contact:
    contact = db.query(Contact).filter(
        Contact.id == contact_id,
        Contact.organization_id == organization_id
    ).first()
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contato não encontrado")
    return contact


def _phone_or_400(raw: str) -> str:
    phone = clean_phone(raw)
    if not phone:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Número de telefone inválido")
    return phone


def _phone_taken(db: Session, organization_id: str, phone: str, exclude_id: Optional[str] = None) -> bool:
    query = db.query(Contact.id).filter(Contact.organization_id == organization_id, Contact.phone_number == phone)
    if exclude_id:
        query = query.filter(Contact.id != exclude_id)
    return query.first() is not None


def _with_counts(db: Session, contact: Contact) -> dict:
    data = dump(ContactOut, contact)
    data["_count"] = {
        "conversations": db.query(Conversation).filter(Conversation.contact_id == contact.id).count(),
        "messages": db.query(Message).filter(Message.contact_id == contact.id).count(),
    }
    return data


# --- Rotas com caminho fixo (antes de /{contact_id}) ---

@router.get("/")
async def list_contacts(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        search: Optional[str] = None,
        tags: Optional[str] = None,
        is_active: Optional[bool] = Query(None, alias="isActive"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    query = db.query(Contact).filter(Contact.organization_id == current_user.organization_id)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            Contact.name.ilike(like),
            Contact.phone_number.ilike(like),
            Contact.email.ilike(like),
            Contact.company.ilike(like),
        ))
    if is_active is not None:
        query = query.filter(Contact.is_active.is_(is_active))

    query = query.order_by(Contact.last_interaction.desc(), Contact.created_at.desc())

    wanted = {t.strip() for t in (tags or "").split(",") if t.strip()}
    if wanted:
        # tags é uma lista em JSON: o filtro "tem alguma das tags" roda em Python
        matches = [c for c in query.all() if wanted.intersection(c.tags or [])]
        total = len(matches)
        contacts = matches[(page - 1) * limit: page * limit]
    else:
        total = query.count()
        contacts = query.offset((page - 1) * limit).limit(limit).all()

    return {
        "contacts": [_with_counts(db, c) for c in contacts],
        "pagination": pagination(page, limit, total),
    }


@router.get("/tags/list")
async def list_tags(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    tags = set()
    for (contact_tags,) in db.query(Contact.tags).filter(Contact.organization_id == current_user.organization_id):
        tags.update(contact_tags or [])
    return sorted(tags)


@router.get("/export/csv")
async def export_csv(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    contacts = db.query(Contact).filter(
        Contact.organization_id == current_user.organization_id
    ).order_by(Contact.created_at.desc()).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for contact in contacts:
        writer.writerow([
            contact.name or "",
            contact.phone_number,
            contact.email or "",
            contact.company or "",
            "; ".join(contact.tags or []),
            contact.notes or "",
            contact.created_at.isoformat() if contact.created_at else "",
        ])

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=contatos.csv"}
    )


@router.post("/import")
async def import_contacts(
        body: ContactImportRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    if len(body.contacts) > MAX_IMPORT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Máximo de {MAX_IMPORT} contatos por importação"
        )

    organization_id = current_user.organization_id
    results, errors = [], []
    for item in body.contacts:
        raw_phone = item.get("phoneNumber") or item.get("phone_number") or ""
        phone = clean_phone(str(raw_phone))
        if not phone:
            errors.append({"phoneNumber": raw_phone, "error": "Número de telefone obrigatório"})
            continue
        try:
            data = ContactCreateRequest.model_validate({**item, "phoneNumber": phone})
        except ValidationError as e:
            errors.append({"phoneNumber": phone, "error": e.errors()[0].get("msg")})
            continue
        if _phone_taken(db, organization_id, phone):
            errors.append({"phoneNumber": phone, "error": "Contato já existe"})
            continue

        contact = Contact(organization_id=organization_id, **data.model_dump())
        db.add(contact)
        db.flush()
        results.append({"id": contact.id, "phoneNumber": phone, "name": contact.name})

    db.commit()
    print_info(f"Importação de contatos por {current_user.email}: {len(results)} ok, {len(errors)} falhas")
    return {
        "results": results,
        "errors": errors,
        "summary": {"total": len(body.contacts), "imported": len(results), "failed": len(errors)},
    }


# --- CRUD ---

@router.get("/{contact_id}")
async def get_contact(
        contact_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    contact = _get_contact(db, contact_id, current_user.organization_id)
    conversations = db.query(Conversation).filter(
        Conversation.contact_id == contact.id
    ).order_by(Conversation.created_at.desc()).limit(10).all()
    messages = db.query(Message).filter(
        Message.contact_id == contact.id
    ).order_by(Message.created_at.desc()).limit(20).all()

    data = _with_counts(db, contact)
    data["conversations"] = dump_list(ConversationOut, conversations)
    data["messages"] = dump_list(MessageOut, messages)
    return data


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_contact(
        body: ContactCreateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    phone = _phone_or_400(body.phone_number)
    if _phone_taken(db, current_user.organization_id, phone):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Contato já existe com este número de telefone")

    data = body.model_dump()
    data["phone_number"] = phone
    contact = Contact(organization_id=current_user.organization_id, **data)
    db.add(contact)
    db.commit()
    db.refresh(contact)
    return _with_counts(db, contact)


@router.put("/{contact_id}")
async def update_contact(
        contact_id: str,
        body: ContactUpdateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    contact = _get_contact(db, contact_id, current_user.organization_id)
    data = body.model_dump(exclude_unset=True)

    if data.get("phone_number"):
        data["phone_number"] = _phone_or_400(data["phone_number"])
        if _phone_taken(db, current_user.organization_id, data["phone_number"], exclude_id=contact.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Já existe um contato com este número de telefone")

    for field, value in data.items():
        if value is None and field in ("phone_number", "is_active", "tags"):
            continue
        setattr(contact, field, value)
    db.commit()
    db.refresh(contact)
    return _with_counts(db, contact)


@router.delete("/{contact_id}")
async def delete_contact(
        contact_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    contact = _get_contact(db, contact_id, current_user.organization_id)
    db.delete(contact)
    db.commit()
    return {"message": "Contato excluído com sucesso"}
