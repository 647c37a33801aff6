"""Tests with two sessions writing the same row at the same time."""

import threading
from datetime import date
from decimal import Decimal

from agrocredito.models import Financiamiento, Pago, SujetoProductivo
from agrocredito.services import financiamientos, pagos
from agrocredito.services.errores import ConcurrencyConflict, ErrorAgrocredito, ExceedsEligibility
from agrocredito.services.financiamientos import crear_financiamiento
from agrocredito.services.pagos import registrar_pago


def _sincronizar(monkeypatch, modulo, nombre, partes=2):
    """Hace que los primeros `partes` hilos que llamen `modulo.nombre` se esperen entre sí."""
    barrera = threading.Barrier(partes, timeout=5)
    original = getattr(modulo, nombre)
    local = threading.local()

    def _envuelta(*args, **kwargs):
        if not getattr(local, "esperado", False):
            local.esperado = True
            try:
                barrera.wait()
            except threading.BrokenBarrierError:
                pass
        return original(*args, **kwargs)

    monkeypatch.setattr(modulo, nombre, _envuelta)


def _en_paralelo(session_factory, *operaciones):
    """Corre cada operación en su hilo y su sesión; retorna resultado o excepción."""
    resultados = [None] * len(operaciones)

    def _correr(indice, operacion):
        sesion = session_factory()
        try:
            resultados[indice] = operacion(sesion)
        except Exception as e:
            resultados[indice] = e
        finally:
            sesion.close()

    hilos = [threading.Thread(target=_correr, args=(i, op)) for i, op in enumerate(operaciones)]
    for hilo in hilos:
        hilo.start()
    for hilo in hilos:
        hilo.join(timeout=60)
    return resultados


def test_concurrent_payments_on_one_financing(db, session_factory, operador, parcela_aprobada, monkeypatch):
    """Two sales read the same balance; the loser retries on the new balance."""
    parcela, sujeto = parcela_aprobada(monto=10000)
    financiamiento_id = crear_financiamiento(db, operador, sujeto.id, parcela.id, 8000, 0.1, 3, "insumos").id
    db.commit()

    _sincronizar(monkeypatch, pagos, "calcular_reparto")

    def _pagar(sesion):
        pago = registrar_pago(sesion, operador, financiamiento_id, date(2026, 6, 1), 5000, "transferencia")
        return pago.monto_retenido, pago.ganancia_agricultor

    resultados = _en_paralelo(session_factory, _pagar, _pagar)

    for resultado in resultados:
        assert isinstance(resultado, (tuple, ConcurrencyConflict)), repr(resultado)
    exitos = [r for r in resultados if isinstance(r, tuple)]
    assert sorted(retenido for retenido, _ in exitos) == [Decimal("3000.00"), Decimal("5000.00")]

    db.expire_all()
    financiamiento = db.get(Financiamiento, financiamiento_id)
    assert financiamiento.total_pagado == 8000
    assert financiamiento.estado == "cosechado"
    assert db.query(Pago).count() == 2
    for pago in db.query(Pago).all():
        assert pago.monto_retenido + pago.ganancia_agricultor == pago.monto_venta
    assert sum((p.monto_retenido for p in financiamiento.pagos), Decimal("0")) == financiamiento.total_pagado


def test_concurrent_financings_on_one_subject(db, session_factory, operador, parcela_aprobada, monkeypatch):
    """With committed principal subtracted, only one of two racing financings fits."""
    parcela, sujeto = parcela_aprobada(monto=10000)
    sujeto_id, parcela_id = sujeto.id, parcela.id
    version = sujeto.version
    db.commit()

    config = {"elegibilidad": {"descontar_comprometido": True}}
    _sincronizar(monkeypatch, financiamientos, "monto_elegible")

    def _financiar(sesion):
        return crear_financiamiento(
            sesion, operador, sujeto_id, parcela_id, 6000, 0.1, 2, "insumos", config=config,
        ).id

    resultados = _en_paralelo(session_factory, _financiar, _financiar)

    for resultado in resultados:
        if isinstance(resultado, Exception):
            assert isinstance(resultado, ErrorAgrocredito), repr(resultado)
    creados = [r for r in resultados if isinstance(r, int)]
    rechazos = [r for r in resultados if isinstance(r, ExceedsEligibility)]
    assert len(creados) == 1
    assert len(rechazos) == 1
    assert rechazos[0].detalles["monto_elegible"] == 4000.0

    db.expire_all()
    assert db.query(Financiamiento).count() == 1
    assert db.get(SujetoProductivo, sujeto_id).version == version + 1
