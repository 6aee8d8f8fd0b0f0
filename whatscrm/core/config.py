# Em whatscrm/core/config.py
# Todas as variáveis de ambiente lidas num lugar só (o .env já foi carregado pelo main)

import os

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# --- Banco ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./whatscrm.db")
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# --- JWT ---
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))

# --- HTTP ---
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("false", "0", "no")
RATE_LIMIT = os.getenv(
    "RATE_LIMIT",
    "100/15minutes" if ENVIRONMENT == "production" else "1000/15minutes"
)

# --- Evolution API ---
# Fallback global; cada organização pode salvar as próprias credenciais em settings.evolution
EVOLUTION_API_URL = os.getenv("EVOLUTION_API_URL")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY")
WEBHOOK_BASE_URL = os.getenv("WEBHOOK_BASE_URL") or os.getenv("API_BASE_URL") or "http://localhost:3001"

BULK_SEND_DELAY_SECONDS = float(os.getenv("BULK_SEND_DELAY_SECONDS", "2"))


def is_development() -> bool:
    return ENVIRONMENT == "development"
