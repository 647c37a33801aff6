"""
Servicio: Cálculo de Monto Elegible (Inferido)
agrocredito/services/elegibilidad.py

PRINCIPIO: El monto elegible no se guarda, se INFIERE en cada consulta.

    Monto Elegible = Σ estimación vigente de cada parcela elegible del sujeto

Una parcela es elegible si su ÚLTIMA inspección está completada (aprobada)
y esa misma inspección dejó una estimación vigente mayor a cero. Cada
parcela cuenta una vez, aunque haya sido inspeccionada varias veces.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import (
    Agricultor,
    EstadoFinanciamiento,
    EstadoInspeccion,
    EstimacionParcela,
    Financiamiento,
    Inspeccion,
    Parcela,
    SujetoProductivo,
)
from agrocredito.services.politicas import dinero, obtener_config
from agrocredito.services.sujetos import obtener_sujeto, restringir_sujeto


def _parcelas_elegibles(db: Session, sujeto: SujetoProductivo) -> List[Dict]:
    ultima = (
        db.query(
            Inspeccion.parcela_id.label("parcela_id"),
            func.max(Inspeccion.id).label("inspeccion_id"),
        )
        .group_by(Inspeccion.parcela_id)
        .subquery()
    )

    filas = (
        db.query(
            Parcela.id,
            Parcela.nombre,
            EstimacionParcela.id,
            EstimacionParcela.monto_estimado,
        )
        .select_from(Parcela)
        .join(Agricultor, Parcela.agricultor_id == Agricultor.id)
        .join(ultima, ultima.c.parcela_id == Parcela.id)
        .join(Inspeccion, Inspeccion.id == ultima.c.inspeccion_id)
        .join(
            EstimacionParcela,
            and_(
                EstimacionParcela.parcela_id == Parcela.id,
                EstimacionParcela.inspeccion_id == ultima.c.inspeccion_id,
                EstimacionParcela.vigente == True,
            ),
        )
        .filter(
            Agricultor.cedula == sujeto.cedula,
            Inspeccion.estado == EstadoInspeccion.COMPLETADA.value,
            EstimacionParcela.monto_estimado > 0,
        )
        .order_by(Parcela.id.asc(), EstimacionParcela.id.desc())
        .all()
    )

    # Una fila por parcela: la estimación más reciente
    elegibles = []
    vistas = set()
    for parcela_id, nombre, _estimacion_id, monto in filas:
        if parcela_id in vistas:
            continue
        vistas.add(parcela_id)
        elegibles.append({
            "parcela_id": parcela_id,
            "nombre": nombre,
            "monto_estimado": dinero(monto),
        })
    return elegibles


def monto_comprometido(db: Session, sujeto_id: int) -> Decimal:
    """Capital de financiamientos del sujeto que no están cosechados."""
    total = db.query(func.coalesce(func.sum(Financiamiento.monto), 0)).filter(
        Financiamiento.sujeto_id == sujeto_id,
        Financiamiento.estado != EstadoFinanciamiento.COSECHADO.value,
    ).scalar()
    return dinero(total)


def monto_elegible(db: Session, sujeto_id: int, config: Optional[dict] = None) -> Decimal:
    """Función pura sobre el estado actual del almacén. Sin caché."""
    sujeto = obtener_sujeto(db, sujeto_id)
    total = sum((p["monto_estimado"] for p in _parcelas_elegibles(db, sujeto)), Decimal("0"))

    if obtener_config(config)["elegibilidad"]["descontar_comprometido"]:
        total = max(total - monto_comprometido(db, sujeto_id), Decimal("0"))

    return dinero(total)


def parcela_es_elegible(db: Session, sujeto_id: int, parcela_id: int) -> bool:
    sujeto = obtener_sujeto(db, sujeto_id)
    return any(p["parcela_id"] == parcela_id for p in _parcelas_elegibles(db, sujeto))


def listar_parcelas_elegibles(db: Session, ctx: ContextoSolicitud, sujeto_id: int) -> List[Dict]:
    """[{parcela_id, nombre, monto_estimado}] de las parcelas que hoy califican."""
    exigir_permiso(ctx, "reportes.ver")
    sujeto_id = restringir_sujeto(db, ctx, sujeto_id)
    return _parcelas_elegibles(db, obtener_sujeto(db, sujeto_id))


def consultar_monto_elegible(db: Session, ctx: ContextoSolicitud, sujeto_id: int) -> Decimal:
    exigir_permiso(ctx, "reportes.ver")
    sujeto_id = restringir_sujeto(db, ctx, sujeto_id)
    return monto_elegible(db, sujeto_id)
