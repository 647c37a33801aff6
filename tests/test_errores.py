"""Tests for the error taxonomy and bounded concurrency retries."""

import sqlite3

import pytest
from sqlalchemy.exc import OperationalError

from agrocredito.services.errores import (
    ConcurrencyConflict,
    ErrorAgrocredito,
    ExceedsEligibility,
    FinancingNotActive,
    InvalidTransition,
    PartialWriteError,
    ValidationError,
    con_reintentos,
    confirmar,
    es_bloqueo,
)


class _Operacion:
    def __init__(self, fallos, error=ConcurrencyConflict):
        self.fallos = fallos
        self.error = error
        self.llamadas = 0

    def __call__(self):
        self.llamadas += 1
        if self.llamadas <= self.fallos:
            raise self.error("conflicto simulado")
        return "ok"


def test_retries_concurrency_conflicts_until_success(db):
    operacion = _Operacion(fallos=2)
    assert con_reintentos(db, operacion, max_intentos=3) == "ok"
    assert operacion.llamadas == 3


def test_retries_are_bounded(db):
    operacion = _Operacion(fallos=10)
    with pytest.raises(ConcurrencyConflict):
        con_reintentos(db, operacion, max_intentos=3)
    assert operacion.llamadas == 3


@pytest.mark.parametrize("error", [ValidationError, ExceedsEligibility, InvalidTransition, FinancingNotActive])
def test_business_rejections_are_not_retried(db, error):
    operacion = _Operacion(fallos=1, error=error)
    with pytest.raises(error):
        con_reintentos(db, operacion, max_intentos=3)
    assert operacion.llamadas == 1


def test_every_error_carries_a_stable_code():
    codigos = {
        cls.codigo
        for cls in (ValidationError, InvalidTransition, ExceedsEligibility,
                    FinancingNotActive, ConcurrencyConflict, PartialWriteError)
    }
    assert len(codigos) == 6

    error = ExceedsEligibility("Monto excedido", {"monto_elegible": 10.0})
    assert isinstance(error, ErrorAgrocredito)
    assert error.as_dict() == {
        "error": "Monto excedido",
        "codigo": "EXCEEDS_ELIGIBILITY",
        "detalles": {"monto_elegible": 10.0},
    }
    assert error.status_code == 422


def _bloqueo():
    return OperationalError(
        "UPDATE financiamientos SET total_pagado=?", {}, sqlite3.OperationalError("database is locked")
    )


class _ErrorPostgres(Exception):
    pgcode = "40P01"


def test_lock_errors_are_recognized():
    assert es_bloqueo(_bloqueo())
    assert es_bloqueo(OperationalError("UPDATE", {}, _ErrorPostgres("deadlock detected")))
    assert not es_bloqueo(OperationalError("SELECT", {}, sqlite3.OperationalError("no such table: pagos")))
    assert not es_bloqueo(RuntimeError("database is locked"))


def test_lock_contention_on_commit_becomes_concurrency_conflict(db, monkeypatch):
    def _commit():
        raise _bloqueo()

    monkeypatch.setattr(db, "commit", _commit)
    with pytest.raises(ConcurrencyConflict) as exc:
        confirmar(db)
    assert "database is locked" in exc.value.detalles["detalle"]


def test_other_database_errors_propagate_untouched(db, monkeypatch):
    def _commit():
        raise OperationalError("SELECT", {}, sqlite3.OperationalError("no such table: pagos"))

    monkeypatch.setattr(db, "commit", _commit)
    with pytest.raises(OperationalError):
        confirmar(db)


def test_lock_timeout_inside_operation_is_retried(db):
    llamadas = []

    def _operacion():
        llamadas.append(1)
        if len(llamadas) == 1:
            raise _bloqueo()
        return "ok"

    assert con_reintentos(db, _operacion, max_intentos=3) == "ok"
    assert len(llamadas) == 2
