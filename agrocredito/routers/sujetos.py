"""
Módulo: Sujetos productivos y elegibilidad
agrocredito/routers/sujetos.py
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, obtener_contexto
from agrocredito.services.elegibilidad import consultar_monto_elegible, listar_parcelas_elegibles
from agrocredito.services.sujetos import buscar_sujetos, registrar_sujeto

router = APIRouter(prefix="/api/sujetos", tags=["Sujetos"])


class RegistrarSujetoRequest(BaseModel):
    cedula: str
    nombre: Optional[str] = None
    telefono: Optional[str] = None
    email: Optional[str] = None
    direccion: Optional[str] = None
    actividad: Optional[str] = None


@router.post("")
async def upsert(
    body: RegistrarSujetoRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    atributos = body.model_dump(exclude={"cedula"}, exclude_none=True)
    return {"sujeto_id": registrar_sujeto(db, ctx, body.cedula, atributos)}


@router.get("/buscar")
async def buscar(
    q: str = Query(..., min_length=1),
    limite: int = Query(10, ge=1, le=50),
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return {"resultados": buscar_sujetos(db, ctx, q, limite)}


@router.get("/{sujeto_id}/parcelas-elegibles")
async def parcelas_elegibles(
    sujeto_id: int,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    parcelas = listar_parcelas_elegibles(db, ctx, sujeto_id)
    return {
        "sujeto_id": sujeto_id,
        "parcelas": [
            {**p, "monto_estimado": float(p["monto_estimado"])}
            for p in parcelas
        ],
    }


@router.get("/{sujeto_id}/monto-elegible")
async def monto_elegible(
    sujeto_id: int,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return {"sujeto_id": sujeto_id, "monto_elegible": float(consultar_monto_elegible(db, ctx, sujeto_id))}
