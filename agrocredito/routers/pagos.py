"""
Módulo: Pagos por cosecha
agrocredito/routers/pagos.py

Registro de ventas de cosecha contra un financiamiento y libro de pagos.
"""
from datetime import date
from typing import Optional
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, obtener_contexto
from agrocredito.services.pagos import libro_pagos, pago_a_dict, registrar_pago

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pagos", tags=["Pagos"])


class RegistrarPagoRequest(BaseModel):
    financiamiento_id: int
    fecha: date
    monto_venta: float
    metodo: str = "transferencia"
    referencia: Optional[str] = None


@router.post("")
async def registrar(
    body: RegistrarPagoRequest,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    pago = registrar_pago(
        db, ctx,
        financiamiento_id=body.financiamiento_id,
        fecha=body.fecha,
        monto_venta=body.monto_venta,
        metodo=body.metodo,
        referencia=body.referencia,
    )
    f = pago.financiamiento
    return {
        **pago_a_dict(pago),
        "financiamiento": {
            "estado": f.estado,
            "total_pagado": float(f.total_pagado),
            "saldo_pendiente": float(f.saldo_pendiente),
        },
    }


@router.get("")
async def libro(
    fecha_desde: Optional[date] = None,
    fecha_hasta: Optional[date] = None,
    sujeto_id: Optional[int] = None,
    financiamiento_id: Optional[int] = None,
    metodo: Optional[str] = None,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    filtros = {
        "fecha_desde": fecha_desde,
        "fecha_hasta": fecha_hasta,
        "sujeto_id": sujeto_id,
        "financiamiento_id": financiamiento_id,
        "metodo": metodo,
    }
    pagos = libro_pagos(db, ctx, filtros)
    return {"pagos": [pago_a_dict(p) for p in pagos], "total": len(pagos)}
