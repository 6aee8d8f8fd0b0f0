# Em whatscrm/core/shared.py

import math
from typing import Optional


# --- Classes de Cores ---
class Colors:
    RED = '\033[91m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    END = '\033[0m'


# --- Funções de Impressão (Log) ---
def print_error(msg): print(f"{Colors.RED}❌ {msg}{Colors.END}")
def print_info(msg): print(f"{Colors.BLUE}ℹ️  {msg}{Colors.END}")
def print_success(msg): print(f"{Colors.GREEN}✅ {msg}{Colors.END}")
def print_warning(msg): print(f"{Colors.YELLOW}⚠️  {msg}{Colors.END}")


# --- JIDs do WhatsApp ---
def normalize_jid(jid: Optional[str]) -> Optional[str]:
    """
    Garante o sufixo @s.whatsapp.net em números puros.
    Grupos (@g.us), LIDs e outros formatos ficam como vieram.
    """
    if not jid:
        return jid
    if "@" not in jid:
        return f"{jid}@s.whatsapp.net"
    return jid


def phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """'5511999999999@s.whatsapp.net' -> '5511999999999' (remove também o sufixo de device ':12')"""
    if not jid:
        return None
    number = jid.split("@")[0]
    return number.split(":")[0]


def is_group_jid(jid: Optional[str]) -> bool:
    return bool(jid) and (jid.endswith("@g.us") or jid == "status@broadcast")


def clean_phone(phone: str) -> str:
    """Mantém apenas dígitos (o WhatsApp não aceita '+', espaços ou traços)."""
    return "".join(ch for ch in (phone or "") if ch.isdigit())


# --- Paginação ---
def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0
    }
