"""
Servicio: Ciclo de Vida de Financiamientos
agrocredito/services/financiamientos.py

    activo → en_seguimiento → cosechado
       ↘          ↘
        incumplido (política de mora, externa)

La creación se serializa por sujeto: se bloquea la fila del sujeto y se le
sube la versión ANTES de evaluar el monto elegible. Dos altas simultáneas
contra el mismo sujeto no pueden aprobarse ambas sobre la misma lectura.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session, joinedload

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import EstadoFinanciamiento, Financiamiento, SujetoProductivo
from agrocredito.schemas import parsear_metadatos, serializar
from agrocredito.services.elegibilidad import monto_elegible, parcela_es_elegible
from agrocredito.services.errores import (
    ExceedsEligibility,
    InvalidTransition,
    NoEncontrado,
    PermisoDenegado,
    ValidationError,
    con_reintentos,
    confirmar,
)
from agrocredito.services.politicas import a_decimal, dinero
from agrocredito.services.sujetos import restringir_sujeto

logger = logging.getLogger(__name__)


TRANSICIONES_FINANCIAMIENTO = {
    EstadoFinanciamiento.ACTIVO.value: (
        EstadoFinanciamiento.EN_SEGUIMIENTO.value,
        EstadoFinanciamiento.COSECHADO.value,
        EstadoFinanciamiento.INCUMPLIDO.value,
    ),
    EstadoFinanciamiento.EN_SEGUIMIENTO.value: (
        EstadoFinanciamiento.COSECHADO.value,
        EstadoFinanciamiento.INCUMPLIDO.value,
    ),
    EstadoFinanciamiento.COSECHADO.value: (),
    EstadoFinanciamiento.INCUMPLIDO.value: (),
}

ESTADOS_VALIDOS = tuple(TRANSICIONES_FINANCIAMIENTO)


# ═════════════════════════════════════════════════════════════════════════════
# ALTA
# ═════════════════════════════════════════════════════════════════════════════

def crear_financiamiento(
    db: Session,
    ctx: ContextoSolicitud,
    sujeto_id: int,
    parcela_id: int,
    monto,
    tasa,
    numero_cosechas: int,
    proposito: str,
    metadatos: Optional[dict] = None,
    config: Optional[dict] = None,
) -> Financiamiento:
    """
    Crea un financiamiento activo si el monto cabe en lo elegible del sujeto.

    Raises:
        ValidationError: datos mal formados o parcela no elegible para el sujeto
        NoEncontrado: el sujeto no existe
        ExceedsEligibility: monto > monto elegible al momento de confirmar
    """
    exigir_permiso(ctx, "financiamientos.crear")

    monto = dinero(a_decimal(monto, "monto"))
    tasa = a_decimal(tasa, "tasa", limite=Decimal("1e4"))
    if monto <= 0:
        raise ValidationError("El monto debe ser mayor a cero", {"campo": "monto"})
    if tasa <= 0:
        raise ValidationError("La tasa debe ser mayor a cero", {"campo": "tasa"})
    if isinstance(numero_cosechas, bool) or not isinstance(numero_cosechas, int) or numero_cosechas < 1:
        raise ValidationError("Se requiere al menos una cosecha", {"campo": "numero_cosechas"})
    if not (proposito or "").strip():
        raise ValidationError("El propósito es requerido", {"campo": "proposito"})
    proposito = proposito.strip()
    datos_meta = serializar(parsear_metadatos(metadatos))

    def _operacion():
        sujeto = (
            db.query(SujetoProductivo)
            .filter(SujetoProductivo.id == sujeto_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not sujeto:
            raise NoEncontrado("Sujeto productivo no encontrado", {"sujeto_id": sujeto_id})

        if not parcela_es_elegible(db, sujeto.id, parcela_id):
            raise ValidationError(
                "La parcela no es elegible para este sujeto",
                {"campo": "parcela_id", "parcela_id": parcela_id},
            )

        elegible = monto_elegible(db, sujeto.id, config)
        if monto > elegible:
            raise ExceedsEligibility(
                f"Monto solicitado {monto} excede el monto elegible {elegible}",
                {"monto_solicitado": float(monto), "monto_elegible": float(elegible)},
            )

        # Sube la versión del sujeto: otra alta concurrente falla al confirmar
        ahora = datetime.now(timezone.utc)
        sujeto.updated_at = ahora

        financiamiento = Financiamiento(
            sujeto_id=sujeto.id,
            parcela_id=parcela_id,
            monto=monto,
            tasa=tasa,
            numero_cosechas=numero_cosechas,
            proposito=proposito,
            fecha_inicio=ahora.date(),
            estado=EstadoFinanciamiento.ACTIVO.value,
            total_pagado=dinero(0),
            metadatos=datos_meta,
            created_by=ctx.usuario_id,
        )
        db.add(financiamiento)
        confirmar(db)
        db.refresh(financiamiento)
        return financiamiento

    try:
        financiamiento = con_reintentos(db, _operacion)
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"Financiamiento #{financiamiento.id} creado: sujeto #{sujeto_id}, "
        f"parcela #{parcela_id}, monto {monto}, {numero_cosechas} cosechas"
    )
    return financiamiento


# ═════════════════════════════════════════════════════════════════════════════
# ESTADO
# ═════════════════════════════════════════════════════════════════════════════

def validar_transicion(actual: str, nuevo: str) -> None:
    if nuevo not in TRANSICIONES_FINANCIAMIENTO.get(actual, ()):
        raise InvalidTransition(
            f"Transición no permitida: {actual} → {nuevo}",
            {"estado_actual": actual, "estado_destino": nuevo},
        )


def actualizar_estado(db: Session, ctx: ContextoSolicitud, financiamiento_id: int, nuevo_estado: str) -> Financiamiento:
    """Cambio manual de estado. Solo admin, solo por las aristas permitidas."""
    exigir_permiso(ctx, "financiamientos.estado")
    if nuevo_estado not in ESTADOS_VALIDOS:
        raise ValidationError(f"Estado desconocido: '{nuevo_estado}'", {"campo": "estado"})

    def _operacion():
        financiamiento = (
            db.query(Financiamiento)
            .filter(Financiamiento.id == financiamiento_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not financiamiento:
            raise NoEncontrado("Financiamiento no encontrado", {"financiamiento_id": financiamiento_id})

        anterior = financiamiento.estado
        validar_transicion(anterior, nuevo_estado)
        financiamiento.estado = nuevo_estado
        confirmar(db)
        logger.info(f"Financiamiento #{financiamiento.id}: {anterior} → {nuevo_estado} por {ctx.usuario_id}")
        return financiamiento

    try:
        return con_reintentos(db, _operacion)
    except Exception:
        db.rollback()
        raise


# ═════════════════════════════════════════════════════════════════════════════
# CONSULTAS
# ═════════════════════════════════════════════════════════════════════════════

def obtener_financiamiento(db: Session, ctx: ContextoSolicitud, financiamiento_id: int) -> Financiamiento:
    exigir_permiso(ctx, "reportes.ver")
    financiamiento = db.query(Financiamiento).filter(Financiamiento.id == financiamiento_id).first()
    if not financiamiento:
        raise NoEncontrado("Financiamiento no encontrado", {"financiamiento_id": financiamiento_id})

    propio = restringir_sujeto(db, ctx, None)
    if propio is not None and financiamiento.sujeto_id != propio:
        raise PermisoDenegado("Solo puede consultar sus propios financiamientos")
    return financiamiento


def financiamientos_por_estado(
    db: Session,
    ctx: ContextoSolicitud,
    estados: Optional[Iterable[str]] = None,
) -> List[Financiamiento]:
    """Filtra por estados (vacío = todos). Cada uno trae su sujeto cargado."""
    exigir_permiso(ctx, "reportes.ver")
    estados = list(estados or [])
    desconocidos = [e for e in estados if e not in ESTADOS_VALIDOS]
    if desconocidos:
        raise ValidationError(f"Estados desconocidos: {desconocidos}", {"campo": "estados"})

    query = db.query(Financiamiento).options(joinedload(Financiamiento.sujeto))
    if estados:
        query = query.filter(Financiamiento.estado.in_(estados))

    propio = restringir_sujeto(db, ctx, None)
    if propio is not None:
        query = query.filter(Financiamiento.sujeto_id == propio)

    return query.order_by(Financiamiento.created_at.desc(), Financiamiento.id.desc()).all()
