# Em whatscrm/routers/auth.py
from fastapi import APIRouter, Depends, HTTPException, status
from jose import JWTError
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, utcnow, Organization, User, UserRole, UserStatus
from whatscrm.core.shared import print_info, print_success, print_warning
from whatscrm.schemas import LoginRequest, RegisterRequest, RefreshRequest, UserOut, dump

router = APIRouter(
    prefix="/auth",
    tags=["Autenticação"]
)


def _session_payload(user: User, message: str) -> dict:
    return {
        "message": message,
        "token": security.create_user_token(user),
        "user": {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "organization": {
                "id": user.organization.id,
                "name": user.organization.name,
                "isActive": user.organization.is_active,
            },
        },
    }


@router.post("/login", summary="Login com email e senha")
async def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == body.email.lower()).first()
    if user is None or not security.verify_password(body.password, user.password):
        print_warning(f"Tentativa de login com credenciais inválidas: {body.email}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciais inválidas")
    if user.status != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuário inativo")
    if not user.organization.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Organização inativa")

    user.last_login = utcnow()
    db.commit()
    print_success(f"Login realizado: {user.email}")
    return _session_payload(user, "Login realizado com sucesso")


@router.post("/register", status_code=status.HTTP_201_CREATED, summary="Cria organização + usuário ADMIN")
async def register(body: RegisterRequest, db: Session = Depends(get_db)):
    email = body.email.lower()
    if db.query(User.id).filter(User.email == email).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email já está em uso")

    organization = Organization(
        name=body.organization_name,
        description=body.organization_description,
        settings={},
    )
    db.add(organization)
    db.flush()

    user = User(
        name=body.name,
        email=email,
        password=security.get_password_hash(body.password),
        role=UserRole.ADMIN.value,
        status=UserStatus.ACTIVE.value,
        organization_id=organization.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    print_info(f"Nova organização registrada: {organization.name} ({user.email})")
    return _session_payload(user, "Conta criada com sucesso")


@router.get("/verify", summary="Valida o token atual")
async def verify(current_user: User = Depends(security.get_current_user)):
    return {"valid": True, "user": dump(UserOut, current_user)}


@router.post("/refresh", summary="Renova o token (aceita token expirado)")
async def refresh(
        body: RefreshRequest = None,
        token: str = Depends(security.oauth2_scheme),
        db: Session = Depends(get_db)
):
    token = (body.token if body and body.token else None) or token
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token de acesso não fornecido")
    try:
        payload = security.decode_token(token, verify_exp=False)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")

    user = db.query(User).filter(User.id == payload.get("userId")).first()
    if user is None or user.status != UserStatus.ACTIVE.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuário não encontrado ou inativo")
    return {"token": security.create_user_token(user)}
