"""Tests for repayment KPIs, ledger consistency checks and the Excel export."""

from datetime import date
from decimal import Decimal
from io import BytesIO

import pytest
from openpyxl import load_workbook

from agrocredito.models import Financiamiento
from agrocredito.services.financiamientos import crear_financiamiento
from agrocredito.services.kpi import exportar_libro_excel, totales_kpi, verificar_consistencia
from agrocredito.services.pagos import registrar_pago


@pytest.fixture
def con_pagos(db, operador, parcela_aprobada):
    parcela, sujeto = parcela_aprobada(monto=10000)
    f = crear_financiamiento(db, operador, sujeto.id, parcela.id, 8000, 0.1, 3, "insumos")
    registrar_pago(db, operador, f.id, date(2026, 6, 1), 5000, "transferencia")
    registrar_pago(db, operador, f.id, date(2026, 12, 1), 5000, "efectivo")
    return f


def test_totals(db, admin, con_pagos):
    totales = totales_kpi(db, admin)

    assert totales == {
        "cantidad_pagos": 2,
        "total_ingresos": Decimal("10000.00"),
        "total_retenido": Decimal("8000.00"),
        "total_ganancia_agricultor": Decimal("2000.00"),
    }


def test_totals_with_filters(db, admin, con_pagos):
    segundo_semestre = totales_kpi(db, admin, {"fecha_desde": date(2026, 7, 1)})
    assert segundo_semestre["total_ingresos"] == 5000
    assert segundo_semestre["total_retenido"] == 3000
    assert segundo_semestre["total_ganancia_agricultor"] == 2000

    vacio = totales_kpi(db, admin, {"financiamiento_id": 999})
    assert vacio["cantidad_pagos"] == 0
    assert vacio["total_ingresos"] == 0


def test_farmer_totals_are_scoped(db, agricultor_ctx, operador, con_pagos, parcela_aprobada):
    parcela, maria = parcela_aprobada(monto=3000, cedula="V87654321", nombre="María Gómez", parcela="P9")
    f = crear_financiamiento(db, operador, maria.id, parcela.id, 1000, 0.1, 1, "riego")
    registrar_pago(db, operador, f.id, date(2026, 6, 1), 700, "efectivo")

    assert totales_kpi(db, agricultor_ctx)["total_ingresos"] == 10000
    assert totales_kpi(db, operador)["total_ingresos"] == 10700


def test_consistency_is_clean_after_normal_operation(db, admin, con_pagos):
    assert verificar_consistencia(db, admin) == []


def test_consistency_detects_tampered_balance(db, admin, con_pagos):
    db.query(Financiamiento).filter(Financiamiento.id == con_pagos.id).update(
        {"total_pagado": Decimal("7000.00")}, synchronize_session=False
    )
    db.commit()

    problemas = verificar_consistencia(db, admin)

    assert problemas == [{
        "tipo": "saldo_descuadrado",
        "financiamiento_id": con_pagos.id,
        "total_pagado": 7000.0,
        "suma_retenida": 8000.0,
    }]


def test_excel_export(db, admin, con_pagos):
    contenido = exportar_libro_excel(db, admin)

    ws = load_workbook(BytesIO(contenido)).active
    assert ws.title == "Libro de Pagos"
    assert ws["A1"].value == "LIBRO DE PAGOS POR COSECHA"
    assert ws.cell(row=4, column=7).value == "Venta"
    # Más reciente primero
    assert ws.cell(row=5, column=1).value == "01/12/2026"
    assert ws.cell(row=5, column=8).value == 3000.0
    assert ws.cell(row=6, column=8).value == 5000.0
    assert ws.cell(row=8, column=6).value == "TOTALES"
    assert ws.cell(row=8, column=7).value == 10000.0
