"""
Servicio: Retención y Repago por Cosecha
agrocredito/services/pagos.py

Cada venta de cosecha se reparte así:
    retenido  = min(monto_venta, saldo pendiente)   → abona al financiamiento
    ganancia  = monto_venta - retenido              → para el agricultor

El pago y el nuevo total_pagado se confirman en UNA transacción, con la fila
del financiamiento bloqueada y su versión verificada.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Query, Session, joinedload

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import (
    ESTADOS_FINANCIAMIENTO_VIGENTE,
    EstadoFinanciamiento,
    Financiamiento,
    Pago,
)
from agrocredito.services.errores import (
    FinancingNotActive,
    NoEncontrado,
    ValidationError,
    con_reintentos,
    confirmar,
)
from agrocredito.services.politicas import a_decimal, dinero
from agrocredito.services.sujetos import restringir_sujeto

logger = logging.getLogger(__name__)

FILTROS_LIBRO = ("fecha_desde", "fecha_hasta", "sujeto_id", "financiamiento_id", "metodo")


def _fecha(valor, campo: str) -> date:
    if isinstance(valor, date):
        return valor
    if isinstance(valor, str) and valor.strip():
        try:
            return date.fromisoformat(valor.strip()[:10])
        except ValueError:
            pass
    raise ValidationError(f"Fecha inválida en {campo}: '{valor}'", {"campo": campo})


def calcular_reparto(monto_venta: Decimal, saldo_pendiente: Decimal):
    """(retenido, ganancia) para una venta contra un saldo dado."""
    saldo = max(dinero(saldo_pendiente), Decimal("0"))
    retenido = min(dinero(monto_venta), saldo)
    return retenido, dinero(monto_venta) - retenido


# ═════════════════════════════════════════════════════════════════════════════
# REGISTRO
# ═════════════════════════════════════════════════════════════════════════════

def registrar_pago(
    db: Session,
    ctx: ContextoSolicitud,
    financiamiento_id: int,
    fecha,
    monto_venta,
    metodo: str,
    referencia: Optional[str] = None,
) -> Pago:
    """
    Registra una venta de cosecha y aplica la retención al financiamiento.

    Raises:
        ValidationError: monto no positivo, método vacío o fecha inválida
        NoEncontrado: el financiamiento no existe
        FinancingNotActive: el financiamiento está cosechado o incumplido
        ConcurrencyConflict: la versión siguió cambiando tras los reintentos
    """
    exigir_permiso(ctx, "pagos.registrar")

    monto_venta = dinero(a_decimal(monto_venta, "monto_venta"))
    if monto_venta <= 0:
        raise ValidationError("El monto de venta debe ser mayor a cero", {"campo": "monto_venta"})
    if not (metodo or "").strip():
        raise ValidationError("El método de pago es requerido", {"campo": "metodo"})
    if fecha is None:
        raise ValidationError("La fecha del pago es requerida", {"campo": "fecha"})
    fecha = _fecha(fecha, "fecha")
    metodo = metodo.strip().lower()

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
        if financiamiento.estado not in ESTADOS_FINANCIAMIENTO_VIGENTE:
            raise FinancingNotActive(
                f"El financiamiento #{financiamiento.id} está {financiamiento.estado}",
                {"financiamiento_id": financiamiento.id, "estado": financiamiento.estado},
            )

        retenido, ganancia = calcular_reparto(monto_venta, financiamiento.saldo_pendiente)

        pago = Pago(
            sujeto_id=financiamiento.sujeto_id,
            financiamiento_id=financiamiento.id,
            fecha=fecha,
            monto_venta=monto_venta,
            monto_retenido=retenido,
            ganancia_agricultor=ganancia,
            metodo=metodo,
            referencia=(referencia or "").strip() or None,
            registrado_por=ctx.usuario_id,
        )
        db.add(pago)

        financiamiento.total_pagado = dinero(financiamiento.total_pagado + retenido)
        if financiamiento.total_pagado >= financiamiento.monto:
            financiamiento.estado = EstadoFinanciamiento.COSECHADO.value
        elif financiamiento.estado == EstadoFinanciamiento.ACTIVO.value:
            financiamiento.estado = EstadoFinanciamiento.EN_SEGUIMIENTO.value

        confirmar(db)
        db.refresh(pago)
        logger.info(
            f"Pago #{pago.id} en financiamiento #{financiamiento.id}: venta {monto_venta}, "
            f"retenido {retenido}, ganancia {ganancia} → {financiamiento.estado}"
        )
        return pago

    try:
        return con_reintentos(db, _operacion)
    except Exception:
        db.rollback()
        raise


# ═════════════════════════════════════════════════════════════════════════════
# LIBRO
# ═════════════════════════════════════════════════════════════════════════════

def filtrar_pagos(db: Session, ctx: ContextoSolicitud, query: Query, filtros: Optional[dict]) -> Query:
    """Aplica filtros del libro. Un agricultor queda acotado a su sujeto."""
    filtros = {k: v for k, v in (filtros or {}).items() if v is not None}
    desconocidos = [k for k in filtros if k not in FILTROS_LIBRO]
    if desconocidos:
        raise ValidationError(f"Filtros desconocidos: {desconocidos}", {"campo": desconocidos[0]})

    if "fecha_desde" in filtros:
        query = query.filter(Pago.fecha >= _fecha(filtros["fecha_desde"], "fecha_desde"))
    if "fecha_hasta" in filtros:
        query = query.filter(Pago.fecha <= _fecha(filtros["fecha_hasta"], "fecha_hasta"))
    if "financiamiento_id" in filtros:
        query = query.filter(Pago.financiamiento_id == filtros["financiamiento_id"])
    if "metodo" in filtros:
        query = query.filter(Pago.metodo == str(filtros["metodo"]).strip().lower())

    sujeto_id = restringir_sujeto(db, ctx, filtros.get("sujeto_id"))
    if sujeto_id is not None:
        query = query.filter(Pago.sujeto_id == sujeto_id)
    return query


def libro_pagos(db: Session, ctx: ContextoSolicitud, filtros: Optional[dict] = None) -> List[Pago]:
    """Pagos más recientes primero, con sujeto y financiamiento cargados."""
    exigir_permiso(ctx, "reportes.ver")
    query = db.query(Pago).options(
        joinedload(Pago.sujeto),
        joinedload(Pago.financiamiento),
    )
    query = filtrar_pagos(db, ctx, query, filtros)
    return query.order_by(Pago.fecha.desc(), Pago.id.desc()).all()


def pago_a_dict(pago: Pago) -> dict:
    return {
        "id": pago.id,
        "fecha": pago.fecha.isoformat(),
        "financiamiento_id": pago.financiamiento_id,
        "sujeto_id": pago.sujeto_id,
        "sujeto_nombre": pago.sujeto.nombre if pago.sujeto else None,
        "cedula": pago.sujeto.cedula if pago.sujeto else None,
        "proposito": pago.financiamiento.proposito if pago.financiamiento else None,
        "monto_venta": float(pago.monto_venta),
        "monto_retenido": float(pago.monto_retenido),
        "ganancia_agricultor": float(pago.ganancia_agricultor),
        "metodo": pago.metodo,
        "referencia": pago.referencia,
        "registrado_por": pago.registrado_por,
    }
