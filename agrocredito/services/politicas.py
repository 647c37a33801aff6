"""
Políticas de Crédito — AgroCrédito
agrocredito/services/politicas.py

Este archivo provee:
  1. Config por defecto (sobrescribible por llamada)
  2. Redondeo monetario común
  3. Gancho de incumplimiento: qué financiamientos están vencidos y cómo
     marcarlos. Lo invoca un proceso externo; aquí no hay planificador.
"""

import copy
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from agrocredito.config import DESCONTAR_COMPROMETIDO
from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import ESTADOS_FINANCIAMIENTO_VIGENTE, EstadoFinanciamiento, Financiamiento
from agrocredito.services.errores import InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════
# 1. CONFIGURACIÓN POR DEFECTO
# ═══════════════════════════════════════════════════════════

CONFIG_DEFECTO = {
    # ── Elegibilidad ──
    "elegibilidad": {
        # Pregunta abierta de producto: ¿se descuenta el capital ya
        # comprometido en financiamientos no cosechados? El sistema de
        # origen no lo hacía; se deja configurable.
        "descontar_comprometido": DESCONTAR_COMPROMETIDO,
    },

    # ── Incumplimiento ──
    "incumplimiento": {
        "meses_por_cosecha": 6,      # Duración esperada de un ciclo de cosecha
        "dias_gracia": 30,           # Tolerancia después del último ciclo esperado
    },
}


def obtener_config(overrides: Optional[dict] = None) -> dict:
    """CONFIG_DEFECTO fusionado con overrides (un nivel de profundidad)."""
    config = copy.deepcopy(CONFIG_DEFECTO)
    for clave, valor in (overrides or {}).items():
        if isinstance(valor, dict) and isinstance(config.get(clave), dict):
            config[clave] = {**config[clave], **valor}
        else:
            config[clave] = valor
    return config


# ═══════════════════════════════════════════════════════════
# 2. REDONDEO MONETARIO
# ═══════════════════════════════════════════════════════════

CENTAVOS = Decimal("0.01")
# Numeric(14, 2): hasta 12 dígitos enteros
LIMITE_MONTO = Decimal("1e12")


def dinero(valor) -> Decimal:
    """Convierte a Decimal con 2 decimales (ROUND_HALF_UP). float pasa por str."""
    if isinstance(valor, float):
        valor = str(valor)
    try:
        return Decimal(valor).quantize(CENTAVOS, ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"Monto fuera de rango: '{valor}'", {"valor": str(valor)})


def a_decimal(valor, campo: str, limite: Decimal = LIMITE_MONTO) -> Decimal:
    """Entrada numérica del usuario → Decimal finito y acotado, o ValidationError."""
    if valor is None or isinstance(valor, bool):
        raise ValidationError(f"El campo {campo} es requerido", {"campo": campo})
    try:
        numero = Decimal(str(valor))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Valor numérico inválido en {campo}: '{valor}'", {"campo": campo})
    if not numero.is_finite():
        raise ValidationError(f"Valor numérico inválido en {campo}: '{valor}'", {"campo": campo})
    if abs(numero) >= limite:
        raise ValidationError(
            f"Valor fuera de rango en {campo}: '{valor}'",
            {"campo": campo, "limite": str(limite)},
        )
    return numero


# ═══════════════════════════════════════════════════════════
# 3. GANCHO DE INCUMPLIMIENTO
# ═══════════════════════════════════════════════════════════

def fecha_limite(financiamiento: Financiamiento, config: Optional[dict] = None) -> date:
    """Inicio + numero_cosechas ciclos + días de gracia."""
    cfg = obtener_config(config)["incumplimiento"]
    meses = int(cfg["meses_por_cosecha"]) * int(financiamiento.numero_cosechas)
    return financiamiento.fecha_inicio + relativedelta(months=meses, days=int(cfg["dias_gracia"]))


def financiamientos_vencidos(
    db: Session,
    hoy: Optional[date] = None,
    config: Optional[dict] = None,
) -> List[Financiamiento]:
    """Vigentes cuyo plazo esperado ya pasó sin estar saldados. Solo lectura."""
    hoy = hoy or datetime.now(timezone.utc).date()
    vigentes = (
        db.query(Financiamiento)
        .filter(Financiamiento.estado.in_(ESTADOS_FINANCIAMIENTO_VIGENTE))
        .order_by(Financiamiento.id.asc())
        .all()
    )
    return [
        f for f in vigentes
        if f.total_pagado < f.monto and fecha_limite(f, config) < hoy
    ]


def aplicar_incumplimientos(
    db: Session,
    ctx: ContextoSolicitud,
    hoy: Optional[date] = None,
    config: Optional[dict] = None,
) -> List[int]:
    """
    Marca como incumplidos los financiamientos vencidos.
    Idempotente: una segunda corrida ya no los encuentra vigentes.
    """
    from agrocredito.services.financiamientos import actualizar_estado

    exigir_permiso(ctx, "financiamientos.incumplimiento")

    marcados = []
    for f in financiamientos_vencidos(db, hoy, config):
        try:
            actualizar_estado(db, ctx, f.id, EstadoFinanciamiento.INCUMPLIDO.value)
            marcados.append(f.id)
        except InvalidTransition:
            # Saldado o marcado por otra corrida entre la lectura y la escritura
            logger.info(f"Financiamiento #{f.id} ya no admite incumplimiento")

    if marcados:
        logger.info(f"Incumplimiento aplicado a {len(marcados)} financiamientos: {marcados}")
    return marcados
