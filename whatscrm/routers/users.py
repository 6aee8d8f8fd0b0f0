# Em whatscrm/routers/users.py
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Department, User, UserDepartment, UserRole, UserStatus
from whatscrm.core.shared import pagination, print_info
from whatscrm.schemas import (
    dump, dump_list, UserOut, UserCreateRequest, UserUpdateRequest, UserStatusRequest,
    ProfileUpdateRequest, PasswordChangeRequest
)

router = APIRouter(
    prefix="/users",
    tags=["Usuários"],
    dependencies=[Depends(security.get_current_user)]
)

require_admin = security.require_role(UserRole.ADMIN)

ADMINS = (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)
MANAGERS = ADMINS + (UserRole.MANAGER.value,)


def get_permissions(role: str) -> dict:
    return {
        "canManageUsers": role in ADMINS,
        "canManageInstances": role in ADMINS,
        "canViewReports": role in MANAGERS,
        "canManageCampaigns": role in MANAGERS,
        "canManageContacts": role != UserRole.VIEWER.value,
        "canSendMessages": role != UserRole.VIEWER.value,
        "canManageSettings": role in ADMINS,
    }


def _get_user(db: Session, user_id: str, organization_id: str) -> User:
    user = db.query(User).filter(User.id == user_id, User.organization_id == organization_id).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usuário não encontrado")
    return user


def _ensure_email_free(db: Session, email: str, exclude_id: Optional[str] = None):
    query = db.query(User.id).filter(User.email == email)
    if exclude_id:
        query = query.filter(User.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email já está em uso")


def _set_departments(db: Session, user: User, organization_id: str, department_ids: List[str]):
    departments = db.query(Department).filter(
        Department.id.in_(department_ids),
        Department.organization_id == organization_id
    ).all() if department_ids else []
    user.user_departments = [UserDepartment(department_id=d.id) for d in departments]


# --- Rotas com caminho fixo (antes de /{user_id}) ---

@router.get("/", summary="Lista usuários da organização")
async def list_users(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        search: Optional[str] = None,
        role: Optional[UserRole] = None,
        status_filter: Optional[UserStatus] = Query(None, alias="status"),
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    query = db.query(User).filter(User.organization_id == current_user.organization_id)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(User.name.ilike(like), User.email.ilike(like)))
    if role:
        query = query.filter(User.role == role.value)
    if status_filter:
        query = query.filter(User.status == status_filter.value)

    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"users": dump_list(UserOut, users), "pagination": pagination(page, limit, total)}


@router.get("/stats", summary="Contagem de usuários por status e papel")
async def user_stats(current_user: User = Depends(require_admin), db: Session = Depends(get_db)):
    base = db.query(User).filter(User.organization_id == current_user.organization_id)
    by_role = dict(
        db.query(User.role, func.count(User.id))
        .filter(User.organization_id == current_user.organization_id)
        .group_by(User.role).all()
    )
    return {
        "total": base.count(),
        "active": base.filter(User.status == UserStatus.ACTIVE.value).count(),
        "inactive": base.filter(User.status == UserStatus.INACTIVE.value).count(),
        "pending": base.filter(User.status == UserStatus.PENDING.value).count(),
        "byRole": {r.value: by_role.get(r.value, 0) for r in UserRole},
    }


@router.get("/me/permissions")
async def my_permissions(current_user: User = Depends(security.get_current_user)):
    return {"role": current_user.role, "permissions": get_permissions(current_user.role)}


@router.get("/profile/me")
async def get_profile(current_user: User = Depends(security.get_current_user)):
    return dump(UserOut, current_user)


@router.put("/profile/me")
async def update_profile(
        body: ProfileUpdateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(current_user, field, value)
    db.commit()
    db.refresh(current_user)
    return dump(UserOut, current_user)


@router.put("/me/password")
async def change_password(
        body: PasswordChangeRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    if len(body.new_password) < 6:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A nova senha deve ter pelo menos 6 caracteres")
    if not security.verify_password(body.current_password, current_user.password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Senha atual incorreta")
    current_user.password = security.get_password_hash(body.new_password)
    db.commit()
    return {"message": "Senha alterada com sucesso"}


# --- CRUD ---

@router.get("/{user_id}")
async def get_user(
        user_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return dump(UserOut, _get_user(db, user_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_user(
        body: UserCreateRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    email = body.email.lower()
    _ensure_email_free(db, email)

    user = User(
        name=body.name,
        email=email,
        password=security.get_password_hash(body.password),
        role=body.role.value,
        status=body.status.value,
        phone=body.phone,
        organization_id=current_user.organization_id,
    )
    db.add(user)
    db.flush()
    _set_departments(db, user, current_user.organization_id, body.department_ids)
    db.commit()
    db.refresh(user)
    print_info(f"Usuário criado: {user.email} ({user.role}) por {current_user.email}")
    return dump(UserOut, user)


@router.put("/{user_id}")
async def update_user(
        user_id: str,
        body: UserUpdateRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    user = _get_user(db, user_id, current_user.organization_id)
    data = body.model_dump(exclude_unset=True)

    if data.get("email"):
        data["email"] = data["email"].lower()
        _ensure_email_free(db, data["email"], exclude_id=user.id)
    if user.id == current_user.id and data.get("status") == UserStatus.INACTIVE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Você não pode desativar sua própria conta")

    if "password" in data:
        password = data.pop("password")
        if password:
            user.password = security.get_password_hash(password)
    if "department_ids" in data:
        _set_departments(db, user, current_user.organization_id, data.pop("department_ids") or [])

    for field, value in data.items():
        if value is None and field in ("name", "email", "role", "status"):
            continue
        setattr(user, field, value.value if hasattr(value, "value") else value)

    db.commit()
    db.refresh(user)
    return dump(UserOut, user)


@router.patch("/{user_id}/status")
async def update_user_status(
        user_id: str,
        body: UserStatusRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    if body.status not in (UserStatus.ACTIVE.value, UserStatus.INACTIVE.value):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Status inválido")
    if user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Você não pode alterar seu próprio status")

    user = _get_user(db, user_id, current_user.organization_id)
    user.status = body.status
    db.commit()
    db.refresh(user)
    return dump(UserOut, user)


@router.post("/{user_id}/reset-password")
async def reset_password(
        user_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    user = _get_user(db, user_id, current_user.organization_id)
    temporary_password = security.generate_temporary_password()
    user.password = security.get_password_hash(temporary_password)
    db.commit()
    print_info(f"Senha de {user.email} redefinida por {current_user.email}")
    return {"message": "Senha redefinida com sucesso", "temporaryPassword": temporary_password}


@router.delete("/{user_id}")
async def delete_user(
        user_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    if user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Você não pode excluir sua própria conta")
    user = _get_user(db, user_id, current_user.organization_id)
    db.delete(user)
    db.commit()
    return {"message": "Usuário excluído com sucesso"}
