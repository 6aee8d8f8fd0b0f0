import time
from pathlib import Path

from dotenv import load_dotenv

# --- Carregamento de Variáveis (ANTES de importar core modules) ---
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

# Módulos internos (DEPOIS do load_dotenv)
from whatscrm.core import config
from whatscrm.core.database import init_db, utcnow
from whatscrm.core.errors import register_exception_handlers
from whatscrm.core.shared import print_info, print_success, print_warning
from whatscrm.routers import (
    auth, campaigns, contacts, conversations, dashboard, departments, instances, kanban_actions,
    kanbans, messages, organizations, realtime, reports, settings, users, webhooks, websockets
)
from whatscrm.services.evolution_socket_manager import evolution_socket_manager

# --- Configuração do FastAPI ---
app = FastAPI(title="WhatsCRM API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Rate limiting ---
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[config.RATE_LIMIT],
    enabled=config.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    limit = getattr(exc, "limit", None)
    retry_after = limit.limit.get_expiry() if limit is not None else 60
    print_warning(f"Rate limit excedido: {get_remote_address(request)} {request.method} {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={"detail": "Muitas requisições. Tente novamente mais tarde.", "retryAfter": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    print_info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.0f}ms)")
    return response


# --- Rotas ---
for module in (
        auth, users, organizations, departments, settings, instances, contacts, conversations,
        messages, webhooks, websockets, campaigns, reports, dashboard, kanbans, kanban_actions):
    app.include_router(module.router, prefix="/api")
app.include_router(realtime.router)


@app.get("/api/health", tags=["Health"])
async def health():
    return {"status": "OK", "timestamp": utcnow().isoformat(), "environment": config.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    init_db()
    print_success(f"🚀 WhatsCRM iniciado ({config.ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_event():
    await evolution_socket_manager.disconnect_all()
    print_info("WebSockets da Evolution encerrados")


if __name__ == "__main__":
    uvicorn.run("whatscrm.main:app", host="0.0.0.0", port=3001, reload=config.is_development())
