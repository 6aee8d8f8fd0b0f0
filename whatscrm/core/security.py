# Em whatscrm/core/security.py

import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, ExpiredSignatureError, jwt
from sqlalchemy.orm import Session, joinedload

from whatscrm.core import config
from whatscrm.core.database import get_db, User, UserRole, UserStatus
from whatscrm.core.shared import print_error, print_warning

# --- Configuração do JWT ---

SECRET_KEY = config.SECRET_KEY
if not SECRET_KEY:
    # Sem chave definida geramos uma aleatória: todos os logins caem a cada restart.
    print_warning("[SECURITY] SECRET_KEY não encontrada no .env. Gerando chave temporária e aleatória.")
    SECRET_KEY = secrets.token_urlsafe(64)

ALGORITHM = config.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * config.JWT_EXPIRES_DAYS

# --- Dependência OAuth2 ---
# auto_error=False: o token também pode vir por ?token= (WebSocket / downloads)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# --- Funções de Hash ---

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifica se uma senha em texto plano corresponde a um hash usando bcrypt."""
    try:
        plain_password_bytes = plain_password[:72].encode('utf-8')
        hashed_password_bytes = hashed_password.encode('utf-8')
        return bcrypt.checkpw(plain_password_bytes, hashed_password_bytes)
    except (ValueError, TypeError) as e:
        print_error(f"Erro ao verificar senha: {e}")
        return False


def get_password_hash(password: str) -> str:
    """Cria um hash bcrypt a partir de uma senha em texto plano."""
    password_bytes = password[:72].encode('utf-8')
    salt = bcrypt.gensalt(rounds=12)
    hashed_bytes = bcrypt.hashpw(password_bytes, salt)
    return hashed_bytes.decode('utf-8')


def generate_temporary_password(length: int = 10) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# --- Tokens ---

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Cria um novo token de acesso JWT."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_user_token(user: User) -> str:
    return create_access_token({
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "organizationId": user.organization_id,
    })


def decode_token(token: str, verify_exp: bool = True) -> dict:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], options={"verify_exp": verify_exp})


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def authenticate_token(db: Session, token: Optional[str]) -> User:
    """
    Valida o JWT e carrega o usuário (com a organização).
    Usado tanto pelas rotas HTTP quanto pelo WebSocket.
    """
    if not token:
        raise _unauthorized("Token de acesso não fornecido")

    try:
        payload = decode_token(token)
    except ExpiredSignatureError:
        raise _unauthorized("Token expirado")
    except JWTError:
        raise _unauthorized("Token inválido")

    user_id = payload.get("userId")
    if not user_id:
        raise _unauthorized("Token inválido")

    user = db.query(User).options(joinedload(User.organization)).filter(User.id == user_id).first()
    if user is None:
        raise _unauthorized("Usuário não encontrado")
    if user.status != UserStatus.ACTIVE.value:
        raise _unauthorized("Usuário inativo")
    if not user.organization or not user.organization.is_active:
        raise _unauthorized("Organização inativa")
    return user


# --- Funções de Dependência de Segurança ---

async def get_current_user(
        request: Request,
        token: Optional[str] = Depends(oauth2_scheme),
        db: Session = Depends(get_db)
) -> User:
    # 1. Header Authorization: Bearer ...
    # 2. Query string (?token=...)
    if not token:
        token = request.query_params.get("token")
    return authenticate_token(db, token)


def require_role(*roles: UserRole):
    """Fábrica de dependência: só deixa passar os papéis informados (SUPER_ADMIN passa sempre)."""
    allowed = {r.value if isinstance(r, UserRole) else r for r in roles}

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role == UserRole.SUPER_ADMIN.value or current_user.role in allowed:
            return current_user
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Acesso negado. Permissão insuficiente."
        )

    return role_checker
