# Em whatscrm/core/errors.py
import traceback

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import NoResultFound

from whatscrm.core.config import is_development
from whatscrm.core.shared import print_error


class ServiceError(Exception):
    """Erro de regra de negócio levantado pela camada de serviço."""

    def __init__(self, status_code: int, detail):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class EvolutionAPIError(Exception):
    """A Evolution API respondeu fora do 2xx (ou nem respondeu: status_code 502)."""

    def __init__(self, status_code: int, detail: str, payload=None):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.payload = payload


def _is_foreign_key_error(exc: IntegrityError) -> bool:
    text = str(exc.orig).lower()
    return "foreign key" in text


async def integrity_error_handler(request: Request, exc: IntegrityError):
    print_error(f"IntegrityError em {request.method} {request.url.path}: {exc.orig}")
    if _is_foreign_key_error(exc):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Erro de referência", "details": "Existe uma referência inválida no registro"}
        )
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Conflito: registro já existe", "details": "Um registro com esses dados já existe no sistema"}
    )


async def not_found_handler(request: Request, exc: NoResultFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Registro não encontrado"})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", [])[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Dados inválidos", "details": errors}
    )


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def evolution_error_handler(request: Request, exc: EvolutionAPIError):
    print_error(f"Evolution API {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": f"Erro na Evolution API: {exc.detail}"}
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    print_error(f"Erro na aplicação ({request.method} {request.url.path}): {exc}")
    traceback.print_exc()
    content = {"detail": "Erro interno do servidor"}
    if is_development():
        content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(NoResultFound, not_found_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(EvolutionAPIError, evolution_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
