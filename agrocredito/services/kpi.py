"""
Servicio: Indicadores de Repago
agrocredito/services/kpi.py

Totales calculados en SQL en cada consulta (sin acumuladores en memoria):
    total_ingresos            = Σ monto_venta
    total_retenido            = Σ monto_retenido
    total_ganancia_agricultor = Σ ganancia_agricultor
"""

import logging
from datetime import datetime
from io import BytesIO
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import Financiamiento, Pago
from agrocredito.services.pagos import filtrar_pagos, libro_pagos
from agrocredito.services.politicas import dinero

logger = logging.getLogger(__name__)


def totales_kpi(db: Session, ctx: ContextoSolicitud, filtros: Optional[dict] = None) -> dict:
    exigir_permiso(ctx, "reportes.ver")
    query = db.query(
        func.count(Pago.id),
        func.coalesce(func.sum(Pago.monto_venta), 0),
        func.coalesce(func.sum(Pago.monto_retenido), 0),
        func.coalesce(func.sum(Pago.ganancia_agricultor), 0),
    )
    cantidad, ingresos, retenido, ganancia = filtrar_pagos(db, ctx, query, filtros).one()

    return {
        "cantidad_pagos": cantidad or 0,
        "total_ingresos": dinero(ingresos),
        "total_retenido": dinero(retenido),
        "total_ganancia_agricultor": dinero(ganancia),
    }


def verificar_consistencia(db: Session, ctx: ContextoSolicitud) -> List[dict]:
    """
    Lista las violaciones de los invariantes del libro. Vacía = sano.
      - total_pagado distinto a la suma retenida de sus pagos, o mayor al monto
      - pagos cuyo retenido + ganancia no suma la venta
    """
    exigir_permiso(ctx, "reportes.ver")
    problemas = []

    sumas = (
        db.query(
            Pago.financiamiento_id.label("financiamiento_id"),
            func.sum(Pago.monto_retenido).label("retenido"),
        )
        .group_by(Pago.financiamiento_id)
        .subquery()
    )
    filas = (
        db.query(Financiamiento, func.coalesce(sumas.c.retenido, 0))
        .outerjoin(sumas, sumas.c.financiamiento_id == Financiamiento.id)
        .order_by(Financiamiento.id.asc())
        .all()
    )
    for f, retenido in filas:
        total_pagado = dinero(f.total_pagado)
        retenido = dinero(retenido)
        if total_pagado != retenido:
            problemas.append({
                "tipo": "saldo_descuadrado",
                "financiamiento_id": f.id,
                "total_pagado": float(total_pagado),
                "suma_retenida": float(retenido),
            })
        if total_pagado > dinero(f.monto):
            problemas.append({
                "tipo": "sobrepago",
                "financiamiento_id": f.id,
                "total_pagado": float(total_pagado),
                "monto": float(f.monto),
            })

    descuadrados = db.query(Pago).filter(
        func.abs(Pago.monto_retenido + Pago.ganancia_agricultor - Pago.monto_venta) >= 0.005
    ).order_by(Pago.id.asc()).all()
    for p in descuadrados:
        problemas.append({
            "tipo": "reparto_descuadrado",
            "pago_id": p.id,
            "monto_venta": float(p.monto_venta),
            "monto_retenido": float(p.monto_retenido),
            "ganancia_agricultor": float(p.ganancia_agricultor),
        })

    if problemas:
        logger.warning(f"Inconsistencias en el libro de pagos: {len(problemas)}")
    return problemas


# ══════════════════════════════════════════════════════════
# EXPORT EXCEL DEL LIBRO
# ══════════════════════════════════════════════════════════

def exportar_libro_excel(db: Session, ctx: ContextoSolicitud, filtros: Optional[dict] = None) -> bytes:
    from openpyxl import Workbook
    from openpyxl.styles import Font, PatternFill, Alignment, Border, Side

    pagos = libro_pagos(db, ctx, filtros)
    totales = totales_kpi(db, ctx, filtros)

    wb = Workbook()
    ws = wb.active
    ws.title = "Libro de Pagos"

    ws.merge_cells("A1:J1")
    ws["A1"] = "LIBRO DE PAGOS POR COSECHA"
    ws["A1"].font = Font(bold=True, size=14, name="Arial")
    ws["A1"].alignment = Alignment(horizontal="center")

    filtros_txt = ", ".join(f"{k}={v}" for k, v in (filtros or {}).items() if v is not None) or "todos"
    ws.merge_cells("A2:J2")
    ws["A2"] = f"Filtros: {filtros_txt}  |  Generado: {datetime.now().strftime('%d/%m/%Y %H:%M')}"
    ws["A2"].font = Font(size=11, name="Arial")
    ws["A2"].alignment = Alignment(horizontal="center")

    headers = [
        "Fecha", "Pago", "Financ.", "Cédula", "Sujeto", "Propósito",
        "Venta", "Retenido", "Ganancia", "Método",
    ]
    header_fill = PatternFill("solid", fgColor="1F4E79")
    header_font = Font(bold=True, color="FFFFFF", size=10, name="Arial")
    thin = Border(left=Side("thin"), right=Side("thin"), top=Side("thin"), bottom=Side("thin"))

    for col, titulo in enumerate(headers, 1):
        cell = ws.cell(row=4, column=col, value=titulo)
        cell.fill = header_fill
        cell.font = header_font
        cell.border = thin
        cell.alignment = Alignment(horizontal="center")

    row = 5
    for p in pagos:
        valores = [
            p.fecha.strftime("%d/%m/%Y"),
            p.id,
            p.financiamiento_id,
            p.sujeto.cedula if p.sujeto else "",
            p.sujeto.nombre if p.sujeto else "",
            p.financiamiento.proposito if p.financiamiento else "",
            float(p.monto_venta),
            float(p.monto_retenido),
            float(p.ganancia_agricultor),
            p.metodo,
        ]
        for col, valor in enumerate(valores, 1):
            cell = ws.cell(row=row, column=col, value=valor)
            cell.border = thin
            cell.font = Font(name="Arial", size=10)
            if col in (7, 8, 9):
                cell.number_format = "#,##0.00"
                cell.alignment = Alignment(horizontal="right")
        row += 1

    tot_row = row + 1
    ws.cell(row=tot_row, column=6, value="TOTALES").font = Font(bold=True, name="Arial", size=10)
    for col, clave in ((7, "total_ingresos"), (8, "total_retenido"), (9, "total_ganancia_agricultor")):
        cell = ws.cell(row=tot_row, column=col, value=float(totales[clave]))
        cell.number_format = "#,##0.00"
        cell.font = Font(bold=True, name="Arial", size=10)
        cell.border = Border(top=Side(style="double"))

    widths = [12, 8, 8, 13, 32, 20, 13, 13, 13, 14]
    cols = "ABCDEFGHIJ"
    for i, w in enumerate(widths):
        ws.column_dimensions[cols[i]].width = w

    buf = BytesIO()
    wb.save(buf)
    logger.info(f"Libro de pagos exportado: {len(pagos)} filas")
    return buf.getvalue()
