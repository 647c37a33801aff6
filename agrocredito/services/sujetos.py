"""
Servicio: Registro de Sujetos Productivos
agrocredito/services/sujetos.py

Crea o actualiza la identidad financiable de un agricultor.
Clave de conflicto: la cédula normalizada ("V-12.345.678" → "V12345678").

Dos aprobaciones simultáneas de parcelas del mismo agricultor deben
terminar en UN solo sujeto: el INSERT va dentro de un SAVEPOINT y, si
la restricción única lo rechaza, se fusiona con la fila ganadora.
"""

import logging
import re
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud, Rol, exigir_permiso
from agrocredito.models import Financiamiento, SujetoProductivo
from agrocredito.services.errores import (
    NoEncontrado,
    PermisoDenegado,
    ValidationError,
    con_reintentos,
    confirmar,
)

logger = logging.getLogger(__name__)

ATRIBUTOS_MUTABLES = ("nombre", "telefono", "email", "direccion", "actividad")

PATRON_CEDULA = re.compile(r"^[A-Z]?\d{5,10}$")

ESTADOS_BUSQUEDA = ("activo", "en_seguimiento", "cosechado", "incumplido")


def normalizar_cedula(cedula: Optional[str]) -> str:
    limpia = re.sub(r"[\s.\-]", "", (cedula or "")).upper()
    if not PATRON_CEDULA.match(limpia):
        raise ValidationError(f"Cédula inválida: '{cedula}'", {"campo": "cedula"})
    return limpia


def _atributos_mutables(cedula: str, atributos: Optional[dict]) -> Dict[str, str]:
    cambios = {}
    for clave, valor in (atributos or {}).items():
        if clave == "cedula":
            if valor is not None and normalizar_cedula(valor) != cedula:
                raise ValidationError("La cédula de un sujeto no se puede cambiar", {"campo": "cedula"})
            continue
        if clave not in ATRIBUTOS_MUTABLES:
            raise ValidationError(f"Atributo desconocido: '{clave}'", {"campo": clave})
        if valor is None:
            continue
        cambios[clave] = valor.strip() if isinstance(valor, str) else valor
    return cambios


def _buscar_por_cedula(db: Session, cedula: str) -> Optional[SujetoProductivo]:
    return (
        db.query(SujetoProductivo)
        .filter(SujetoProductivo.cedula == cedula)
        .with_for_update()
        .populate_existing()
        .first()
    )


def upsert_sujeto(db: Session, cedula: str, atributos: Optional[dict] = None) -> SujetoProductivo:
    """
    Crea o fusiona el sujeto SIN confirmar la transacción.
    Lo usa el procesamiento de aprobaciones dentro de su propia unidad.
    """
    cedula = normalizar_cedula(cedula)
    cambios = _atributos_mutables(cedula, atributos)

    sujeto = _buscar_por_cedula(db, cedula)
    if sujeto is None:
        nuevo = SujetoProductivo(cedula=cedula, **cambios)
        try:
            with db.begin_nested():
                db.add(nuevo)
                db.flush()
            logger.info(f"Sujeto productivo #{nuevo.id} creado ({cedula})")
            return nuevo
        except IntegrityError:
            # Otra transacción insertó la misma cédula primero
            logger.info(f"Cédula {cedula} registrada en paralelo; se fusiona con la existente")
            sujeto = _buscar_por_cedula(db, cedula)
            if sujeto is None:
                raise

    for clave, valor in cambios.items():
        setattr(sujeto, clave, valor)
    db.flush()
    return sujeto


def registrar_sujeto(
    db: Session,
    ctx: ContextoSolicitud,
    cedula: str,
    atributos: Optional[dict] = None,
) -> int:
    """upsert por cédula; retorna el id del sujeto."""
    exigir_permiso(ctx, "sujetos.registrar")

    def _operacion():
        sujeto = upsert_sujeto(db, cedula, atributos)
        sujeto_id = sujeto.id
        confirmar(db)
        return sujeto_id

    return con_reintentos(db, _operacion)


def obtener_sujeto(db: Session, sujeto_id: int) -> SujetoProductivo:
    sujeto = db.query(SujetoProductivo).filter(SujetoProductivo.id == sujeto_id).first()
    if not sujeto:
        raise NoEncontrado("Sujeto productivo no encontrado", {"sujeto_id": sujeto_id})
    return sujeto


def restringir_sujeto(db: Session, ctx: ContextoSolicitud, sujeto_id: Optional[int]) -> Optional[int]:
    """
    Un agricultor solo ve su propio sujeto. Para los demás roles el filtro
    pasa tal cual.
    """
    if ctx.rol != Rol.AGRICULTOR:
        return sujeto_id

    propio = None
    if ctx.cedula:
        propio = (
            db.query(SujetoProductivo)
            .filter(SujetoProductivo.cedula == normalizar_cedula(ctx.cedula))
            .first()
        )
    if propio is None:
        raise PermisoDenegado("El usuario no tiene un sujeto productivo asociado")
    if sujeto_id is not None and sujeto_id != propio.id:
        raise PermisoDenegado("Solo puede consultar su propio sujeto productivo", {"sujeto_id": sujeto_id})
    return propio.id


def buscar_sujetos(db: Session, ctx: ContextoSolicitud, termino: str, limite: int = 10) -> List[dict]:
    """Busca por nombre o cédula e incluye los financiamientos de cada sujeto."""
    exigir_permiso(ctx, "reportes.ver")
    q = (termino or "").strip()
    if not q:
        return []

    query = db.query(SujetoProductivo).filter(
        or_(
            SujetoProductivo.nombre.ilike(f"%{q}%"),
            SujetoProductivo.cedula.ilike(f"%{q.replace('-', '').replace('.', '')}%"),
        )
    )
    propio = restringir_sujeto(db, ctx, None)
    if propio is not None:
        query = query.filter(SujetoProductivo.id == propio)

    sujetos = query.order_by(SujetoProductivo.nombre.asc()).limit(limite).all()
    if not sujetos:
        return []

    fins = (
        db.query(Financiamiento)
        .filter(
            Financiamiento.sujeto_id.in_([s.id for s in sujetos]),
            Financiamiento.estado.in_(ESTADOS_BUSQUEDA),
        )
        .order_by(Financiamiento.id.asc())
        .all()
    )
    por_sujeto: Dict[int, list] = {}
    for f in fins:
        por_sujeto.setdefault(f.sujeto_id, []).append({
            "id": f.id,
            "monto": float(f.monto),
            "total_pagado": float(f.total_pagado),
            "estado": f.estado,
            "proposito": f.proposito,
            "numero_cosechas": f.numero_cosechas,
        })

    return [
        {
            "id": s.id,
            "cedula": s.cedula,
            "nombre": s.nombre,
            "financiamientos": por_sujeto.get(s.id, []),
        }
        for s in sujetos
    ]
