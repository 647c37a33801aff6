"""Tests for the inspection state machine and its approval outbox."""

from datetime import date

import pytest

from agrocredito.models import (
    EstimacionParcela,
    Inspeccion,
    SujetoProductivo,
    TareaAprobacion,
)
from agrocredito.services import inspecciones
from agrocredito.services.elegibilidad import monto_elegible
from agrocredito.services.errores import (
    ConflictoInspeccion,
    InvalidTransition,
    NoEncontrado,
    PermisoDenegado,
    ValidationError,
)
from agrocredito.services.inspecciones import (
    aprobar_inspeccion,
    crear_inspeccion,
    estadisticas_inspecciones,
    iniciar_inspeccion,
    normalizar_estado_inspeccion,
    procesar_tarea_aprobacion,
    procesar_tareas_pendientes,
    programar_inspeccion,
    rechazar_inspeccion,
)


def test_approval_creates_subject_and_estimation(db, operador, inspeccion_programada):
    """Approving sets completada and registers the farmer as a productive subject."""
    inspeccion = inspeccion_programada()
    inspeccion = aprobar_inspeccion(db, operador, inspeccion.id, notas="ok", monto_estimado=10000)

    assert inspeccion.estado == "completada"
    assert inspeccion.aprobada_at is not None

    sujeto = db.query(SujetoProductivo).one()
    assert sujeto.cedula == "V12345678"
    assert sujeto.nombre == "Juan Pérez"
    assert monto_elegible(db, sujeto.id) == 10000

    tarea = db.query(TareaAprobacion).one()
    assert tarea.estado == "procesada"
    assert tarea.sujeto_id == sujeto.id


def test_full_path_through_en_progreso(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()
    inspeccion = iniciar_inspeccion(db, operador, inspeccion.id, {"schema_version": 1, "cultivo": "cacao"})
    assert inspeccion.estado == "en_progreso"
    assert inspeccion.iniciada_at is not None

    inspeccion = aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=2500)
    assert inspeccion.estado == "completada"
    assert inspeccion.datos_formulario == {"schema_version": 1, "cultivo": "cacao"}


def test_approving_twice_is_invalid_transition(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()
    aprobar_inspeccion(db, operador, inspeccion.id, notas="primera", monto_estimado=10000)
    aprobada_at = db.get(Inspeccion, inspeccion.id).aprobada_at

    with pytest.raises(InvalidTransition) as exc:
        aprobar_inspeccion(db, operador, inspeccion.id, notas="segunda", monto_estimado=99999)
    db.rollback()

    assert exc.value.detalles["estado_actual"] == "completada"
    recargada = db.get(Inspeccion, inspeccion.id)
    assert recargada.notas == "primera"
    assert recargada.aprobada_at == aprobada_at
    assert db.query(TareaAprobacion).count() == 1
    assert db.query(EstimacionParcela).count() == 1


def test_cannot_approve_pending_inspection(db, operador, nueva_parcela):
    parcela = nueva_parcela()
    inspeccion = crear_inspeccion(db, operador, parcela.id)

    with pytest.raises(InvalidTransition):
        aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=100)
    db.rollback()
    assert db.get(Inspeccion, inspeccion.id).estado == "pendiente"


def test_reject_requires_reason(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()

    with pytest.raises(ValidationError):
        rechazar_inspeccion(db, operador, inspeccion.id, "   ")
    assert db.get(Inspeccion, inspeccion.id).estado == "programada"

    rechazada = rechazar_inspeccion(db, operador, inspeccion.id, "Plaga en el cultivo")
    assert rechazada.estado == "cancelada"
    assert rechazada.motivo_rechazo == "Plaga en el cultivo"
    assert db.query(SujetoProductivo).count() == 0
    assert db.query(TareaAprobacion).count() == 0


def test_terminal_states_reject_every_transition(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()
    rechazar_inspeccion(db, operador, inspeccion.id, "Parcela inundada")

    for accion in (
        lambda: programar_inspeccion(db, operador, inspeccion.id, date(2026, 4, 1)),
        lambda: iniciar_inspeccion(db, operador, inspeccion.id),
        lambda: aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=1),
        lambda: rechazar_inspeccion(db, operador, inspeccion.id, "otra vez"),
    ):
        with pytest.raises(InvalidTransition) as exc:
            accion()
        db.rollback()
        assert exc.value.detalles["terminal"] is True

    assert db.get(Inspeccion, inspeccion.id).estado == "cancelada"


def test_negative_estimate_is_rejected_before_any_write(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()

    with pytest.raises(ValidationError):
        aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=-5)

    assert db.get(Inspeccion, inspeccion.id).estado == "programada"
    assert db.query(TareaAprobacion).count() == 0


def test_estimate_derived_from_v1_form(db, operador, nueva_parcela):
    parcela = nueva_parcela()
    inspeccion = crear_inspeccion(db, operador, parcela.id, datos_formulario={
        "schema_version": 1,
        "area_hectareas": "2",
        "rendimiento_kg_ha": "1000",
        "precio_kg": "0.5",
    })
    programar_inspeccion(db, operador, inspeccion.id, date(2026, 3, 1))
    inspeccion = aprobar_inspeccion(db, operador, inspeccion.id)

    assert inspeccion.monto_estimado == 1000
    estimacion = db.query(EstimacionParcela).one()
    assert estimacion.monto_estimado == 1000
    assert estimacion.vigente is True


def test_approval_without_estimate_leaves_parcel_ineligible(db, operador, inspeccion_programada):
    inspeccion = inspeccion_programada()
    aprobar_inspeccion(db, operador, inspeccion.id, notas="sin valoración")

    sujeto = db.query(SujetoProductivo).one()
    assert db.query(EstimacionParcela).count() == 0
    assert monto_elegible(db, sujeto.id) == 0


def test_only_one_open_inspection_per_parcel(db, operador, nueva_parcela):
    parcela = nueva_parcela()
    primera = crear_inspeccion(db, operador, parcela.id)

    with pytest.raises(ConflictoInspeccion) as exc:
        crear_inspeccion(db, operador, parcela.id)
    db.rollback()
    assert exc.value.detalles["inspeccion_id"] == primera.id

    programar_inspeccion(db, operador, primera.id, date(2026, 3, 1))
    rechazar_inspeccion(db, operador, primera.id, "Faltan documentos")
    segunda = crear_inspeccion(db, operador, parcela.id, prioridad="alta")
    assert segunda.estado == "pendiente"
    assert segunda.prioridad == "alta"


def test_create_inspection_for_missing_parcel(db, operador):
    with pytest.raises(NoEncontrado):
        crear_inspeccion(db, operador, 999)


def test_farmer_role_cannot_approve(db, operador, agricultor_ctx, inspeccion_programada):
    inspeccion = inspeccion_programada()
    with pytest.raises(PermisoDenegado):
        aprobar_inspeccion(db, agricultor_ctx, inspeccion.id, monto_estimado=100)
    assert db.get(Inspeccion, inspeccion.id).estado == "programada"


def test_failed_side_effect_stays_pending_and_is_retried(db, operador, admin, inspeccion_programada, monkeypatch):
    """A failing subject upsert keeps the approval and leaves the task for retry."""
    inspeccion = inspeccion_programada()

    def _falla(*args, **kwargs):
        raise RuntimeError("registro caído")

    monkeypatch.setattr(inspecciones, "upsert_sujeto", _falla)
    inspeccion = aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=10000)

    assert inspeccion.estado == "completada"
    tarea = db.query(TareaAprobacion).one()
    assert tarea.estado == "pendiente"
    assert tarea.intentos == 1
    assert "registro caído" in tarea.ultimo_error
    assert db.query(SujetoProductivo).count() == 0

    monkeypatch.undo()
    stats = procesar_tareas_pendientes(db, admin)
    assert stats == {"procesadas": 1, "fallidas": 0}

    tarea = db.query(TareaAprobacion).one()
    assert tarea.estado == "procesada"
    assert tarea.ultimo_error is None
    assert db.query(SujetoProductivo).count() == 1
    assert monto_elegible(db, tarea.sujeto_id) == 10000

    # Repetir una tarea procesada no duplica nada
    procesar_tarea_aprobacion(db, tarea.id)
    assert db.query(SujetoProductivo).count() == 1
    assert db.query(EstimacionParcela).count() == 1


def test_reinspection_replaces_estimate(db, operador, parcela_aprobada):
    parcela, sujeto = parcela_aprobada(monto=10000)
    assert monto_elegible(db, sujeto.id) == 10000

    nueva = crear_inspeccion(db, operador, parcela.id)
    # Mientras la re-inspección está abierta, la última inspección no está aprobada
    assert monto_elegible(db, sujeto.id) == 0

    programar_inspeccion(db, operador, nueva.id, date(2026, 9, 1))
    aprobar_inspeccion(db, operador, nueva.id, monto_estimado=12000)

    assert monto_elegible(db, sujeto.id) == 12000
    vigentes = db.query(EstimacionParcela).filter(EstimacionParcela.vigente == True).all()
    assert len(vigentes) == 1
    assert vigentes[0].inspeccion_id == nueva.id
    assert db.query(EstimacionParcela).count() == 2


def test_late_retry_does_not_revive_superseded_estimate(db, operador, admin, nueva_parcela, monkeypatch):
    """A retried task from an older inspection never outranks a newer approval without estimate."""
    parcela = nueva_parcela()
    primera = crear_inspeccion(db, operador, parcela.id)
    programar_inspeccion(db, operador, primera.id, date(2026, 3, 1))

    def _falla(*args, **kwargs):
        raise RuntimeError("registro caído")

    monkeypatch.setattr(inspecciones, "upsert_sujeto", _falla)
    aprobar_inspeccion(db, operador, primera.id, monto_estimado=10000)
    monkeypatch.undo()

    segunda = crear_inspeccion(db, operador, parcela.id)
    programar_inspeccion(db, operador, segunda.id, date(2026, 9, 1))
    aprobar_inspeccion(db, operador, segunda.id, notas="sin valoración")
    sujeto = db.query(SujetoProductivo).one()
    assert monto_elegible(db, sujeto.id) == 0

    assert procesar_tareas_pendientes(db, admin) == {"procesadas": 1, "fallidas": 0}

    assert monto_elegible(db, sujeto.id) == 0
    estimacion = db.query(EstimacionParcela).one()
    assert estimacion.inspeccion_id == primera.id
    assert estimacion.vigente is False


@pytest.mark.parametrize("texto,esperado", [
    ("approved", "completada"),
    ("Aprobada", "completada"),
    ("in_progress", "en_progreso"),
    ("En Progreso", "en_progreso"),
    ("rejected", "cancelada"),
    (" pending ", "pendiente"),
    ("scheduled", "programada"),
    ("archivada", None),
    (None, None),
])
def test_normalize_inspection_status(texto, esperado):
    assert normalizar_estado_inspeccion(texto) == esperado


def test_inspection_statistics(db, operador, admin, nueva_parcela, inspeccion_programada):
    inspeccion_programada(parcela=nueva_parcela(parcela="P1"))
    aprobada = inspeccion_programada(parcela=nueva_parcela(parcela="P2"))
    aprobar_inspeccion(db, operador, aprobada.id, monto_estimado=3000)
    crear_inspeccion(db, operador, nueva_parcela(parcela="P3").id)

    stats = estadisticas_inspecciones(db, admin)

    assert stats["total"] == 3
    assert stats["por_estado"] == {"programada": 1, "completada": 1, "pendiente": 1}
    assert stats["este_mes"] == 3
    assert stats["aprobadas_con_estimacion"] == 1
    assert stats["monto_estimado_total"] == 3000.0
    assert stats["tareas_pendientes"] == 0


def test_scheduled_retry_task(db, session_factory, operador, inspeccion_programada, monkeypatch):
    from agrocredito.tasks.procesar_aprobaciones import reintentar_aprobaciones

    inspeccion = inspeccion_programada()

    def _falla(*args, **kwargs):
        raise RuntimeError("caído")

    monkeypatch.setattr(inspecciones, "upsert_sujeto", _falla)
    aprobar_inspeccion(db, operador, inspeccion.id, monto_estimado=500)
    monkeypatch.undo()
    db.commit()

    assert reintentar_aprobaciones(session_factory) == {"procesadas": 1, "fallidas": 0}
    assert reintentar_aprobaciones(session_factory) == {"procesadas": 0, "fallidas": 0}

    db.expire_all()
    assert db.query(SujetoProductivo).count() == 1
    assert db.query(TareaAprobacion).one().estado == "procesada"
