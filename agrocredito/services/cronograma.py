"""
Servicio: Cronogramas de Amortización
agrocredito/services/cronograma.py

Referencial: el repago real ocurre por retención sobre ventas de cosecha
(services/pagos.py). El cronograma muestra cuánto se esperaría abonar por
período con la tasa del financiamiento.

    Francés → cuota fija:  C = P·i / (1 - (1+i)^-n)
    Lineal  → capital fijo P/n, la cuota baja con el saldo
"""

from decimal import Decimal

from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud
from agrocredito.schemas import MetadatosFinanciamientoV1, parsear_metadatos
from agrocredito.services.errores import ValidationError
from agrocredito.services.financiamientos import obtener_financiamiento
from agrocredito.services.politicas import a_decimal, dinero

METODOS = ("frances", "lineal")

CERO = Decimal("0")


def _resultado(filas, interes_total, cuota=None) -> dict:
    resultado = {
        "cronograma": filas,
        "total_interes": dinero(interes_total),
        "total_pagado": dinero(sum((f["cuota"] for f in filas), CERO)),
    }
    if cuota is not None:
        resultado["cuota"] = dinero(cuota)
    return resultado


def cronograma_frances(monto, tasa_periodica, periodos: int) -> dict:
    monto = a_decimal(monto, "monto")
    i = a_decimal(tasa_periodica, "tasa")
    if monto <= 0 or periodos <= 0:
        return _resultado([], CERO, CERO)

    cuota = monto / periodos if i == 0 else (monto * i) / (1 - (1 + i) ** -periodos)
    saldo = monto
    interes_total = CERO
    filas = []
    for periodo in range(1, periodos + 1):
        interes = saldo * i
        capital = cuota - interes
        saldo = max(CERO, saldo - capital)
        filas.append({
            "periodo": periodo,
            "cuota": dinero(cuota),
            "interes": dinero(interes),
            "capital": dinero(capital),
            "saldo": dinero(saldo),
        })
        interes_total += interes
    return _resultado(filas, interes_total, cuota)


def cronograma_lineal(monto, tasa_periodica, periodos: int) -> dict:
    monto = a_decimal(monto, "monto")
    i = a_decimal(tasa_periodica, "tasa")
    if monto <= 0 or periodos <= 0:
        return _resultado([], CERO)

    capital = monto / periodos
    saldo = monto
    interes_total = CERO
    filas = []
    for periodo in range(1, periodos + 1):
        interes = saldo * i
        saldo = max(CERO, saldo - capital)
        filas.append({
            "periodo": periodo,
            "cuota": dinero(capital + interes),
            "interes": dinero(interes),
            "capital": dinero(capital),
            "saldo": dinero(saldo),
        })
        interes_total += interes
    return _resultado(filas, interes_total)


def cronograma_financiamiento(
    db: Session,
    ctx: ContextoSolicitud,
    financiamiento_id: int,
    metodo: str = None,
) -> dict:
    """Usa monto, tasa y numero_cosechas del financiamiento (un período por cosecha)."""
    financiamiento = obtener_financiamiento(db, ctx, financiamiento_id)

    if metodo is None:
        meta = parsear_metadatos(financiamiento.metadatos)
        if isinstance(meta, MetadatosFinanciamientoV1) and meta.metodo_amortizacion:
            metodo = meta.metodo_amortizacion
        else:
            metodo = "frances"
    if metodo not in METODOS:
        raise ValidationError(f"Método de amortización desconocido: '{metodo}'", {"campo": "metodo"})

    calcular = cronograma_frances if metodo == "frances" else cronograma_lineal
    resultado = calcular(financiamiento.monto, financiamiento.tasa, financiamiento.numero_cosechas)
    resultado["financiamiento_id"] = financiamiento.id
    resultado["metodo"] = metodo
    return resultado
