"""
Módulo: Catálogo de agricultores y parcelas
agrocredito/routers/catalogo.py
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, obtener_contexto
from agrocredito.services.catalogo import registrar_agricultor, registrar_parcela

router = APIRouter(prefix="/api/catalogo", tags=["Catálogo"])


class AgricultorRequest(BaseModel):
    cedula: str
    nombre: str
    telefono: Optional[str] = None
    email: Optional[str] = None


class ParcelaRequest(BaseModel):
    agricultor_id: int
    nombre: str
    area_hectareas: Optional[float] = None
    cultivo_principal: Optional[str] = None


@router.post("/agricultores")
async def crear_agricultor(
    body: AgricultorRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    a = registrar_agricultor(db, ctx, body.cedula, body.nombre, body.telefono, body.email)
    return {"id": a.id, "cedula": a.cedula, "nombre": a.nombre}


@router.post("/parcelas")
async def crear_parcela(
    body: ParcelaRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    p = registrar_parcela(
        db, ctx, body.agricultor_id, body.nombre,
        area_hectareas=body.area_hectareas,
        cultivo_principal=body.cultivo_principal,
    )
    return {
        "id": p.id,
        "agricultor_id": p.agricultor_id,
        "nombre": p.nombre,
        "area_hectareas": float(p.area_hectareas) if p.area_hectareas is not None else None,
        "cultivo_principal": p.cultivo_principal,
    }
