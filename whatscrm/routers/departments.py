# Em whatscrm/routers/departments.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Department, User, UserDepartment, UserRole
from whatscrm.schemas import (
    dump, dump_list, DepartmentOut, DepartmentRequest, DepartmentUsersRequest, UserBrief
)

router = APIRouter(
    prefix="/departments",
    tags=["Departamentos"],
    dependencies=[Depends(security.get_current_user)]
)

require_manager = security.require_role(UserRole.ADMIN, UserRole.MANAGER)


def _get_department(db: Session, department_id: str, organization_id: str) -> Department:
    department = db.query(Department).filter(
        Department.id == department_id,
        Department.organization_id == organization_id
    ).first()
    if department is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Departamento não encontrado")
    return department


def _ensure_name_free(db: Session, organization_id: str, name: str, exclude_id: Optional[str] = None):
    query = db.query(Department.id).filter(
        Department.organization_id == organization_id,
        func.lower(Department.name) == name.lower()
    )
    if exclude_id:
        query = query.filter(Department.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Já existe um departamento com este nome")


def _with_users(department: Department) -> dict:
    data = dump(DepartmentOut, department)
    data["users"] = dump_list(UserBrief, department.users)
    data["_count"] = {"users": len(department.user_departments)}
    return data


@router.get("/")
async def list_departments(
        search: Optional[str] = None,
        is_active: Optional[bool] = Query(None, alias="isActive"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    query = db.query(Department).filter(Department.organization_id == current_user.organization_id)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Department.name.ilike(like), Department.description.ilike(like)))
    if is_active is not None:
        query = query.filter(Department.is_active.is_(is_active))

    result = []
    for department in query.order_by(Department.name).all():
        data = dump(DepartmentOut, department)
        data["_count"] = {"users": len(department.user_departments)}
        result.append(data)
    return result


@router.get("/{department_id}")
async def get_department(
        department_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return _with_users(_get_department(db, department_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_department(
        body: DepartmentRequest,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    _ensure_name_free(db, current_user.organization_id, body.name)
    department = Department(
        name=body.name,
        description=body.description,
        color=body.color or "#3B82F6",
        is_active=True if body.is_active is None else body.is_active,
        organization_id=current_user.organization_id,
    )
    db.add(department)
    db.commit()
    db.refresh(department)
    return dump(DepartmentOut, department)


@router.put("/{department_id}")
async def update_department(
        department_id: str,
        body: DepartmentRequest,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    department = _get_department(db, department_id, current_user.organization_id)
    _ensure_name_free(db, current_user.organization_id, body.name, exclude_id=department.id)

    department.name = body.name
    department.description = body.description
    if body.color:
        department.color = body.color
    if body.is_active is not None:
        department.is_active = body.is_active
    db.commit()
    db.refresh(department)
    return dump(DepartmentOut, department)


@router.delete("/{department_id}")
async def delete_department(
        department_id: str,
        current_user: User = Depends(security.require_role(UserRole.ADMIN)),
        db: Session = Depends(get_db)
):
    department = _get_department(db, department_id, current_user.organization_id)
    if department.user_departments:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Não é possível excluir um departamento com usuários vinculados"
        )
    db.delete(department)
    db.commit()
    return {"message": "Departamento excluído com sucesso"}


@router.post("/{department_id}/users")
async def add_users(
        department_id: str,
        body: DepartmentUsersRequest,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    department = _get_department(db, department_id, current_user.organization_id)
    users = db.query(User).filter(
        User.id.in_(body.user_ids),
        User.organization_id == current_user.organization_id
    ).all()
    linked = {link.user_id for link in department.user_departments}

    for user in users:
        if user.id not in linked:
            db.add(UserDepartment(user_id=user.id, department_id=department.id))
    db.commit()
    db.refresh(department)
    return _with_users(department)


@router.delete("/{department_id}/users/{user_id}")
async def remove_user(
        department_id: str,
        user_id: str,
        current_user: User = Depends(require_manager),
        db: Session = Depends(get_db)
):
    department = _get_department(db, department_id, current_user.organization_id)
    link = db.query(UserDepartment).filter(
        UserDepartment.department_id == department.id,
        UserDepartment.user_id == user_id
    ).first()
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usuário não vinculado ao departamento")
    db.delete(link)
    db.commit()
    return {"message": "Usuário removido do departamento"}
