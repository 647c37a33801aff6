"""
Errores del motor de crédito
agrocredito/services/errores.py

Cada error lleva un `codigo` estable; el router lo traduce a HTTP
con el mismo formato de detalle que usa la capa de autorización:
    {"error": "...", "codigo": "...", "detalles": {...}}
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorAgrocredito(Exception):
    codigo = "ERROR"
    status_code = 400

    def __init__(self, mensaje: str, detalles: Optional[dict] = None):
        super().__init__(mensaje)
        self.mensaje = mensaje
        self.detalles = detalles or {}

    def as_dict(self) -> dict:
        return {"error": self.mensaje, "codigo": self.codigo, "detalles": self.detalles}


class ValidationError(ErrorAgrocredito):
    """Entrada mal formada; se rechaza antes de escribir."""
    codigo = "VALIDATION_ERROR"
    status_code = 422


class InvalidTransition(ErrorAgrocredito):
    codigo = "INVALID_TRANSITION"
    status_code = 409


class ExceedsEligibility(ErrorAgrocredito):
    codigo = "EXCEEDS_ELIGIBILITY"
    status_code = 422


class FinancingNotActive(ErrorAgrocredito):
    codigo = "FINANCING_NOT_ACTIVE"
    status_code = 409


class ConcurrencyConflict(ErrorAgrocredito):
    """Versión de fila desactualizada; el único error que se reintenta."""
    codigo = "CONCURRENCY_CONFLICT"
    status_code = 409


class PartialWriteError(ErrorAgrocredito):
    """
    El pago y la actualización de saldo no quedaron ambos confirmados.
    Inalcanzable mientras ambas escrituras vayan en una sola transacción.
    """
    codigo = "PARTIAL_WRITE"
    status_code = 500


class NoEncontrado(ErrorAgrocredito):
    codigo = "NOT_FOUND"
    status_code = 404


class PermisoDenegado(ErrorAgrocredito):
    codigo = "FORBIDDEN"
    status_code = 403


class ConflictoInspeccion(ErrorAgrocredito):
    codigo = "INSPECTION_OPEN"
    status_code = 409


# SQLite: "database is locked"; PostgreSQL: deadlock, lock_timeout, serialización
_SQLSTATE_BLOQUEO = {"40001", "40P01", "55P03"}


def es_bloqueo(error: Exception) -> bool:
    """True si el error de la base es contención de locks y no un fallo real."""
    if not isinstance(error, OperationalError):
        return False
    original = getattr(error, "orig", None)
    if getattr(original, "pgcode", None) in _SQLSTATE_BLOQUEO:
        return True
    mensaje = str(original or error).lower()
    return "database is locked" in mensaje or "deadlock" in mensaje or "lock timeout" in mensaje


def _conflicto(error: Exception) -> ConcurrencyConflict:
    return ConcurrencyConflict(
        "El registro fue modificado por otra operación",
        {"detalle": str(getattr(error, "orig", None) or error)},
    )


def confirmar(db: Session) -> None:
    """
    Commit que convierte un conflicto de versión o de lock en
    ConcurrencyConflict, dejando la sesión revertida.
    """
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise _conflicto(e) from e
    except OperationalError as e:
        db.rollback()
        if not es_bloqueo(e):
            raise
        raise _conflicto(e) from e


def con_reintentos(db: Session, operacion: Callable[[], T], max_intentos: Optional[int] = None) -> T:
    """
    Ejecuta `operacion` reintentando solo ante ConcurrencyConflict (o un
    lock de la base que expiró a mitad de la operación).
    Los rechazos de negocio se propagan en el primer intento.
    """
    if max_intentos is None:
        from agrocredito.config import MAX_REINTENTOS_CONCURRENCIA
        max_intentos = MAX_REINTENTOS_CONCURRENCIA

    intento = 1
    while True:
        try:
            try:
                return operacion()
            except OperationalError as e:
                if not es_bloqueo(e):
                    raise
                raise _conflicto(e) from e
        except ConcurrencyConflict:
            db.rollback()
            if intento >= max_intentos:
                logger.warning(f"Conflicto de concurrencia persistente tras {intento} intentos")
                raise
            logger.info(f"Conflicto de concurrencia, reintento {intento + 1}/{max_intentos}")
            intento += 1
