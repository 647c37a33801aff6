"""
Módulo: Financiamientos
agrocredito/routers/financiamientos.py

Alta contra el monto elegible del sujeto, consultas por estado,
cambio manual de estado (solo admin) y cronograma referencial.
"""
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, obtener_contexto
from agrocredito.models import Financiamiento
from agrocredito.services.cronograma import cronograma_financiamiento
from agrocredito.services.financiamientos import (
    actualizar_estado,
    crear_financiamiento,
    financiamientos_por_estado,
    obtener_financiamiento,
)
from agrocredito.services.politicas import aplicar_incumplimientos

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/financiamientos", tags=["Financiamientos"])


class CrearFinanciamientoRequest(BaseModel):
    sujeto_id: int
    parcela_id: int
    monto: float
    tasa: float
    numero_cosechas: int
    proposito: str
    metadatos: Optional[Dict[str, Any]] = None


class EstadoRequest(BaseModel):
    estado: str


def financiamiento_a_dict(f: Financiamiento) -> dict:
    return {
        "id": f.id,
        "sujeto_id": f.sujeto_id,
        "sujeto_nombre": f.sujeto.nombre if f.sujeto else None,
        "parcela_id": f.parcela_id,
        "monto": float(f.monto),
        "tasa": float(f.tasa),
        "numero_cosechas": f.numero_cosechas,
        "proposito": f.proposito,
        "estado": f.estado,
        "total_pagado": float(f.total_pagado),
        "saldo_pendiente": float(f.saldo_pendiente),
        "fecha_inicio": f.fecha_inicio.isoformat() if f.fecha_inicio else None,
        "metadatos": f.metadatos,
        "version": f.version,
    }


def _cronograma_a_dict(resultado: dict) -> dict:
    filas = [
        {k: (float(v) if k != "periodo" else v) for k, v in fila.items()}
        for fila in resultado["cronograma"]
    ]
    return {
        **resultado,
        "cronograma": filas,
        "total_interes": float(resultado["total_interes"]),
        "total_pagado": float(resultado["total_pagado"]),
        **({"cuota": float(resultado["cuota"])} if "cuota" in resultado else {}),
    }


@router.post("")
async def crear(
    body: CrearFinanciamientoRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    f = crear_financiamiento(
        db, ctx,
        sujeto_id=body.sujeto_id,
        parcela_id=body.parcela_id,
        monto=body.monto,
        tasa=body.tasa,
        numero_cosechas=body.numero_cosechas,
        proposito=body.proposito,
        metadatos=body.metadatos,
    )
    return financiamiento_a_dict(f)


@router.get("")
async def listar(
    estado: Optional[List[str]] = Query(None),
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    fins = financiamientos_por_estado(db, ctx, estado)
    return {"financiamientos": [financiamiento_a_dict(f) for f in fins], "total": len(fins)}


@router.post("/incumplimientos/aplicar")
async def aplicar_politica_incumplimiento(
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return {"marcados": aplicar_incumplimientos(db, ctx)}


@router.get("/{financiamiento_id}")
async def detalle(
    financiamiento_id: int,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return financiamiento_a_dict(obtener_financiamiento(db, ctx, financiamiento_id))


@router.patch("/{financiamiento_id}/estado")
async def cambiar_estado(
    financiamiento_id: int,
    body: EstadoRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return financiamiento_a_dict(actualizar_estado(db, ctx, financiamiento_id, body.estado))


@router.get("/{financiamiento_id}/cronograma")
async def cronograma(
    financiamiento_id: int,
    metodo: Optional[str] = None,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    return _cronograma_a_dict(cronograma_financiamiento(db, ctx, financiamiento_id, metodo))
