"""
Módulo: Inspecciones de campo
agrocredito/routers/inspecciones.py

Flujo: Crear → Programar → Iniciar → Aprobar / Rechazar

Requiere rol: admin u operador para escribir; cualquier rol para leer.
"""
from datetime import date
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso, obtener_contexto
from agrocredito.models import Inspeccion
from agrocredito.services import inspecciones as svc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inspecciones", tags=["Inspecciones"])


# ============================================================
# SCHEMAS
# ============================================================

class CrearInspeccionRequest(BaseModel):
    parcela_id: int
    prioridad: str = "media"
    datos_formulario: Optional[Dict[str, Any]] = None


class ProgramarRequest(BaseModel):
    fecha: date


class IniciarRequest(BaseModel):
    datos_formulario: Optional[Dict[str, Any]] = None


class AprobarRequest(BaseModel):
    notas: Optional[str] = None
    monto_estimado: Optional[float] = None
    datos_formulario: Optional[Dict[str, Any]] = None


class RechazarRequest(BaseModel):
    motivo: str


def inspeccion_a_dict(i: Inspeccion) -> dict:
    return {
        "id": i.id,
        "parcela_id": i.parcela_id,
        "agricultor_id": i.agricultor_id,
        "estado": i.estado,
        "prioridad": i.prioridad,
        "notas": i.notas,
        "motivo_rechazo": i.motivo_rechazo,
        "monto_estimado": float(i.monto_estimado) if i.monto_estimado is not None else None,
        "datos_formulario": i.datos_formulario,
        "fecha_programada": i.fecha_programada.isoformat() if i.fecha_programada else None,
        "aprobada_at": i.aprobada_at.isoformat() if i.aprobada_at else None,
        "created_at": i.created_at.isoformat() if i.created_at else None,
    }


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("")
async def crear(
    body: CrearInspeccionRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    inspeccion = svc.crear_inspeccion(
        db, ctx, body.parcela_id,
        prioridad=body.prioridad,
        datos_formulario=body.datos_formulario,
    )
    return inspeccion_a_dict(inspeccion)


@router.get("/estadisticas")
async def estadisticas(
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return svc.estadisticas_inspecciones(db, ctx)


@router.post("/tareas/reintentar")
async def reintentar_tareas(
    limite: int = 50,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return svc.procesar_tareas_pendientes(db, ctx, limite=limite)


@router.get("/{inspeccion_id}")
async def detalle(
    inspeccion_id: int,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    exigir_permiso(ctx, "reportes.ver")
    return inspeccion_a_dict(svc.obtener_inspeccion(db, inspeccion_id))


@router.post("/{inspeccion_id}/programar")
async def programar(
    inspeccion_id: int,
    body: ProgramarRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return inspeccion_a_dict(svc.programar_inspeccion(db, ctx, inspeccion_id, body.fecha))


@router.post("/{inspeccion_id}/iniciar")
async def iniciar(
    inspeccion_id: int,
    body: IniciarRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return inspeccion_a_dict(svc.iniciar_inspeccion(db, ctx, inspeccion_id, body.datos_formulario))


@router.post("/{inspeccion_id}/aprobar")
async def aprobar(
    inspeccion_id: int,
    body: AprobarRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    inspeccion = svc.aprobar_inspeccion(
        db, ctx, inspeccion_id,
        notas=body.notas,
        monto_estimado=body.monto_estimado,
        datos_formulario=body.datos_formulario,
    )
    return inspeccion_a_dict(inspeccion)


@router.post("/{inspeccion_id}/rechazar")
async def rechazar(
    inspeccion_id: int,
    body: RechazarRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return inspeccion_a_dict(svc.rechazar_inspeccion(db, ctx, inspeccion_id, body.motivo))
