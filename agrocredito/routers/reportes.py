"""
Router de Reportes — AgroCrédito
Indicadores de repago, verificación del libro y export a Excel.

Agregar a main.py:
    from agrocredito.routers.reportes import router as reportes_router
    app.include_router(reportes_router)
"""

from datetime import date, datetime
from io import BytesIO
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from agrocredito.database import get_db
from agrocredito.middleware.autorizacion import ContextoSolicitud, obtener_contexto
from agrocredito.services.inspecciones import estadisticas_inspecciones
from agrocredito.services.kpi import exportar_libro_excel, totales_kpi, verificar_consistencia

router = APIRouter(prefix="/api/reportes", tags=["reportes"])


def _filtros(fecha_desde, fecha_hasta, sujeto_id, financiamiento_id, metodo) -> dict:
    return {
        "fecha_desde": fecha_desde,
        "fecha_hasta": fecha_hasta,
        "sujeto_id": sujeto_id,
        "financiamiento_id": financiamiento_id,
        "metodo": metodo,
    }


# ══════════════════════════════════════════════════════════
# KPI
# ══════════════════════════════════════════════════════════

@router.get("/kpi")
async def kpi(
    fecha_desde: Optional[date] = None,
    fecha_hasta: Optional[date] = None,
    sujeto_id: Optional[int] = None,
    financiamiento_id: Optional[int] = None,
    metodo: Optional[str] = None,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    totales = totales_kpi(db, ctx, _filtros(fecha_desde, fecha_hasta, sujeto_id, financiamiento_id, metodo))
    return {
        "cantidad_pagos": totales["cantidad_pagos"],
        "total_ingresos": float(totales["total_ingresos"]),
        "total_retenido": float(totales["total_retenido"]),
        "total_ganancia_agricultor": float(totales["total_ganancia_agricultor"]),
    }


@router.get("/resumen")
async def resumen(
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    totales = totales_kpi(db, ctx)
    return {
        "inspecciones": estadisticas_inspecciones(db, ctx),
        "pagos": {k: (float(v) if k != "cantidad_pagos" else v) for k, v in totales.items()},
    }


@router.get("/consistencia")
async def consistencia(
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    problemas = verificar_consistencia(db, ctx)
    return {"ok": not problemas, "problemas": problemas}


# ══════════════════════════════════════════════════════════
# LIBRO DE PAGOS (Excel)
# ══════════════════════════════════════════════════════════

@router.get("/libro/excel")
async def libro_excel(
    fecha_desde: Optional[date] = None,
    fecha_hasta: Optional[date] = None,
    sujeto_id: Optional[int] = None,
    financiamiento_id: Optional[int] = None,
    metodo: Optional[str] = None,
    ctx: ContextoSolicitud = Depends(obtener_contexto),
    db: Session = Depends(get_db),
):
    contenido = exportar_libro_excel(
        db, ctx, _filtros(fecha_desde, fecha_hasta, sujeto_id, financiamiento_id, metodo)
    )

    filename = f"Libro_Pagos_{datetime.now().strftime('%Y%m%d')}.xlsx"
    return StreamingResponse(
        BytesIO(contenido),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
