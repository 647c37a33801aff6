"""
Servicio: Máquina de Estados de Inspecciones
agrocredito/services/inspecciones.py

    pendiente → programada → en_progreso → completada (aprobada)
                                         ↘ cancelada  (rechazada)

Aprobar desde programada o en_progreso. Al aprobar:
  1. En la MISMA transacción: estado = completada + TareaAprobacion (outbox)
  2. Después, en otra transacción: registrar sujeto productivo + estimación
     de la parcela, y marcar la tarea como procesada.
Si el paso 2 falla la inspección sigue aprobada y la tarea queda pendiente
con el error; se reintenta con procesar_tarea_aprobacion() sin re-aprobar.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import (
    ESTADOS_INSPECCION_ABIERTA,
    ESTADOS_INSPECCION_TERMINAL,
    EstadoInspeccion,
    EstadoTarea,
    EstimacionParcela,
    Inspeccion,
    Parcela,
    TareaAprobacion,
)
from agrocredito.schemas import FormularioInspeccionV1, parsear_formulario, serializar
from agrocredito.services.errores import (
    ConflictoInspeccion,
    InvalidTransition,
    NoEncontrado,
    ValidationError,
    con_reintentos,
    confirmar,
)
from agrocredito.services.politicas import a_decimal, dinero
from agrocredito.services.sujetos import upsert_sujeto

logger = logging.getLogger(__name__)


# Acción → (estados de origen permitidos, estado destino)
TRANSICIONES = {
    "programar": ((EstadoInspeccion.PENDIENTE.value,), EstadoInspeccion.PROGRAMADA.value),
    "iniciar": ((EstadoInspeccion.PROGRAMADA.value,), EstadoInspeccion.EN_PROGRESO.value),
    "aprobar": (
        (EstadoInspeccion.PROGRAMADA.value, EstadoInspeccion.EN_PROGRESO.value),
        EstadoInspeccion.COMPLETADA.value,
    ),
    "rechazar": (
        (EstadoInspeccion.PROGRAMADA.value, EstadoInspeccion.EN_PROGRESO.value),
        EstadoInspeccion.CANCELADA.value,
    ),
}

# Variantes de texto que llegan de formularios e integraciones viejas
_VARIANTES_ESTADO = {
    "pending": "pendiente",
    "pendiente": "pendiente",
    "scheduled": "programada",
    "programada": "programada",
    "in_progress": "en_progreso",
    "en progreso": "en_progreso",
    "en_progreso": "en_progreso",
    "approved": "completada",
    "aprobada": "completada",
    "completed": "completada",
    "completada": "completada",
    "rejected": "cancelada",
    "rechazada": "cancelada",
    "cancelled": "cancelada",
    "canceled": "cancelada",
    "cancelada": "cancelada",
}


def normalizar_estado_inspeccion(texto: Optional[str]) -> Optional[str]:
    if not texto:
        return None
    return _VARIANTES_ESTADO.get(str(texto).strip().lower())


def obtener_inspeccion(db: Session, inspeccion_id: int, bloquear: bool = False) -> Inspeccion:
    query = db.query(Inspeccion).filter(Inspeccion.id == inspeccion_id)
    if bloquear:
        query = query.with_for_update().populate_existing()
    inspeccion = query.first()
    if not inspeccion:
        raise NoEncontrado("Inspección no encontrada", {"inspeccion_id": inspeccion_id})
    return inspeccion


def _cargar_para_transicion(db: Session, inspeccion_id: int, accion: str) -> Inspeccion:
    """Bloquea la fila y verifica que la acción sea válida desde el estado actual."""
    origenes, destino = TRANSICIONES[accion]
    inspeccion = obtener_inspeccion(db, inspeccion_id, bloquear=True)
    if inspeccion.estado not in origenes:
        terminal = inspeccion.estado in ESTADOS_INSPECCION_TERMINAL
        raise InvalidTransition(
            f"No se puede {accion} una inspección en estado '{inspeccion.estado}'",
            {
                "inspeccion_id": inspeccion.id,
                "estado_actual": inspeccion.estado,
                "estado_destino": destino,
                "terminal": terminal,
            },
        )
    return inspeccion


# ═════════════════════════════════════════════════════════════════════════════
# ALTA
# ═════════════════════════════════════════════════════════════════════════════

def crear_inspeccion(
    db: Session,
    ctx: ContextoSolicitud,
    parcela_id: int,
    prioridad: str = "media",
    datos_formulario: Optional[dict] = None,
) -> Inspeccion:
    """
    Abre una inspección pendiente para la parcela.
    No se permite más de una inspección abierta por parcela.
    """
    exigir_permiso(ctx, "inspecciones.crear")
    if prioridad not in ("baja", "media", "alta"):
        raise ValidationError(f"Prioridad inválida: '{prioridad}'", {"campo": "prioridad"})

    parcela = (
        db.query(Parcela)
        .filter(Parcela.id == parcela_id)
        .with_for_update()
        .first()
    )
    if not parcela:
        raise NoEncontrado("Parcela no existe", {"parcela_id": parcela_id})
    if not parcela.agricultor_id:
        raise ValidationError("La parcela no está asociada a un agricultor", {"parcela_id": parcela_id})

    abierta = db.query(Inspeccion).filter(
        Inspeccion.parcela_id == parcela.id,
        Inspeccion.estado.in_(ESTADOS_INSPECCION_ABIERTA),
    ).first()
    if abierta:
        raise ConflictoInspeccion(
            "Ya existe una inspección abierta para esta parcela",
            {"inspeccion_id": abierta.id, "estado": abierta.estado},
        )

    inspeccion = Inspeccion(
        parcela_id=parcela.id,
        agricultor_id=parcela.agricultor_id,
        estado=EstadoInspeccion.PENDIENTE.value,
        prioridad=prioridad,
        datos_formulario=serializar(parsear_formulario(datos_formulario)),
        created_by=ctx.usuario_id,
    )
    db.add(inspeccion)
    confirmar(db)
    db.refresh(inspeccion)
    logger.info(f"Inspección #{inspeccion.id} creada para parcela #{parcela.id}")
    return inspeccion


# ═════════════════════════════════════════════════════════════════════════════
# TRANSICIONES
# ═════════════════════════════════════════════════════════════════════════════

def programar_inspeccion(db: Session, ctx: ContextoSolicitud, inspeccion_id: int, fecha: date) -> Inspeccion:
    exigir_permiso(ctx, "inspecciones.transicionar")
    if fecha is None:
        raise ValidationError("La fecha programada es requerida", {"campo": "fecha"})

    inspeccion = _cargar_para_transicion(db, inspeccion_id, "programar")
    inspeccion.estado = EstadoInspeccion.PROGRAMADA.value
    inspeccion.fecha_programada = fecha
    confirmar(db)
    db.refresh(inspeccion)
    return inspeccion


def iniciar_inspeccion(
    db: Session,
    ctx: ContextoSolicitud,
    inspeccion_id: int,
    datos_formulario: Optional[dict] = None,
) -> Inspeccion:
    exigir_permiso(ctx, "inspecciones.transicionar")
    inspeccion = _cargar_para_transicion(db, inspeccion_id, "iniciar")
    inspeccion.estado = EstadoInspeccion.EN_PROGRESO.value
    inspeccion.iniciada_at = datetime.now(timezone.utc)
    if datos_formulario is not None:
        inspeccion.datos_formulario = serializar(parsear_formulario(datos_formulario))
    confirmar(db)
    db.refresh(inspeccion)
    return inspeccion


def aprobar_inspeccion(
    db: Session,
    ctx: ContextoSolicitud,
    inspeccion_id: int,
    notas: Optional[str] = None,
    monto_estimado=None,
    datos_formulario: Optional[dict] = None,
) -> Inspeccion:
    """
    Aprueba la inspección y encola el registro del sujeto + estimación.

    monto_estimado: valor estimado de la cosecha. Si no viene, se deriva
    del formulario V1 (área × rendimiento × precio). Sin ninguno de los
    dos no se escribe estimación y la parcela no queda elegible.
    """
    exigir_permiso(ctx, "inspecciones.aprobar")
    if monto_estimado is not None:
        monto_estimado = dinero(a_decimal(monto_estimado, "monto_estimado"))
        if monto_estimado < 0:
            raise ValidationError("El monto estimado no puede ser negativo", {"campo": "monto_estimado"})

    inspeccion = _cargar_para_transicion(db, inspeccion_id, "aprobar")

    if datos_formulario is not None:
        inspeccion.datos_formulario = serializar(parsear_formulario(datos_formulario))
    if monto_estimado is None:
        formulario = parsear_formulario(inspeccion.datos_formulario)
        if isinstance(formulario, FormularioInspeccionV1) and formulario.valor_estimado() is not None:
            monto_estimado = dinero(formulario.valor_estimado())

    inspeccion.estado = EstadoInspeccion.COMPLETADA.value
    inspeccion.notas = notas
    inspeccion.aprobada_at = datetime.now(timezone.utc)
    inspeccion.monto_estimado = monto_estimado

    tarea = TareaAprobacion(inspeccion_id=inspeccion.id, estado=EstadoTarea.PENDIENTE.value)
    db.add(tarea)
    confirmar(db)
    logger.info(
        f"Inspección #{inspeccion.id} APROBADA por {ctx.usuario_id} "
        f"(parcela #{inspeccion.parcela_id}, estimado {monto_estimado})"
    )

    try:
        procesar_tarea_aprobacion(db, tarea.id)
    except Exception as e:
        # La tarea quedó pendiente con el error; se reintenta aparte
        logger.warning(f"Efecto de aprobación pendiente para inspección #{inspeccion_id}: {e}")

    db.refresh(inspeccion)
    return inspeccion


def rechazar_inspeccion(db: Session, ctx: ContextoSolicitud, inspeccion_id: int, motivo: str) -> Inspeccion:
    exigir_permiso(ctx, "inspecciones.rechazar")
    if not (motivo or "").strip():
        raise ValidationError("El motivo de rechazo es requerido", {"campo": "motivo"})

    inspeccion = _cargar_para_transicion(db, inspeccion_id, "rechazar")
    inspeccion.estado = EstadoInspeccion.CANCELADA.value
    inspeccion.motivo_rechazo = motivo.strip()
    inspeccion.cancelada_at = datetime.now(timezone.utc)
    confirmar(db)
    db.refresh(inspeccion)
    logger.info(f"Inspección #{inspeccion.id} RECHAZADA por {ctx.usuario_id}: {inspeccion.motivo_rechazo}")
    return inspeccion


# ═════════════════════════════════════════════════════════════════════════════
# EFECTO DE LA APROBACIÓN (outbox)
# ═════════════════════════════════════════════════════════════════════════════

def _escribir_estimacion(db: Session, inspeccion: Inspeccion) -> Optional[EstimacionParcela]:
    """
    Deja como vigente la estimación de esta inspección y reemplaza las
    anteriores de la parcela. Si la parcela ya tiene una inspección
    completada más nueva (tarea vieja reintentada tarde), esta se guarda
    no vigente, aunque la nueva no haya dejado estimación.
    """
    existente = db.query(EstimacionParcela).filter(
        EstimacionParcela.inspeccion_id == inspeccion.id
    ).first()
    if existente:
        return existente

    ahora = datetime.now(timezone.utc)
    mas_nueva = db.query(Inspeccion.id).filter(
        Inspeccion.parcela_id == inspeccion.parcela_id,
        Inspeccion.estado == EstadoInspeccion.COMPLETADA.value,
        Inspeccion.id > inspeccion.id,
    ).first()

    if not mas_nueva:
        db.query(EstimacionParcela).filter(
            EstimacionParcela.parcela_id == inspeccion.parcela_id,
            EstimacionParcela.vigente == True,
        ).update({"vigente": False, "reemplazada_at": ahora}, synchronize_session=False)

    if inspeccion.monto_estimado is None:
        return None

    estimacion = EstimacionParcela(
        parcela_id=inspeccion.parcela_id,
        inspeccion_id=inspeccion.id,
        monto_estimado=inspeccion.monto_estimado,
        vigente=mas_nueva is None,
        reemplazada_at=ahora if mas_nueva else None,
    )
    db.add(estimacion)
    db.flush()
    return estimacion


def _ejecutar_tarea(db: Session, tarea_id: int) -> TareaAprobacion:
    tarea = (
        db.query(TareaAprobacion)
        .filter(TareaAprobacion.id == tarea_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not tarea:
        raise NoEncontrado("Tarea de aprobación no encontrada", {"tarea_id": tarea_id})
    if tarea.estado == EstadoTarea.PROCESADA.value:
        return tarea

    inspeccion = tarea.inspeccion
    agricultor = inspeccion.agricultor
    sujeto = upsert_sujeto(db, agricultor.cedula, {
        "nombre": agricultor.nombre,
        "telefono": agricultor.telefono,
        "email": agricultor.email,
    })
    _escribir_estimacion(db, inspeccion)

    tarea.estado = EstadoTarea.PROCESADA.value
    tarea.sujeto_id = sujeto.id
    tarea.intentos = (tarea.intentos or 0) + 1
    tarea.ultimo_error = None
    tarea.procesada_at = datetime.now(timezone.utc)
    confirmar(db)

    logger.info(
        f"Tarea #{tarea.id}: sujeto #{sujeto.id} ({agricultor.cedula}) registrado "
        f"por inspección #{inspeccion.id}"
    )
    return tarea


def _registrar_fallo(db: Session, tarea_id: int, error: Exception) -> None:
    tarea = db.query(TareaAprobacion).filter(TareaAprobacion.id == tarea_id).first()
    if not tarea or tarea.estado == EstadoTarea.PROCESADA.value:
        return
    tarea.intentos = (tarea.intentos or 0) + 1
    tarea.ultimo_error = f"{type(error).__name__}: {error}"[:500]
    db.commit()


def procesar_tarea_aprobacion(db: Session, tarea_id: int) -> TareaAprobacion:
    """Ejecuta el efecto de una aprobación. Repetirlo no duplica nada."""
    try:
        return con_reintentos(db, lambda: _ejecutar_tarea(db, tarea_id))
    except Exception as e:
        db.rollback()
        _registrar_fallo(db, tarea_id, e)
        raise


def procesar_tareas_pendientes(db: Session, ctx: ContextoSolicitud, limite: int = 50) -> Dict[str, int]:
    """Reintenta las tareas de aprobación que quedaron pendientes."""
    exigir_permiso(ctx, "inspecciones.reintentar")
    ids = [
        t.id for t in db.query(TareaAprobacion.id)
        .filter(TareaAprobacion.estado == EstadoTarea.PENDIENTE.value)
        .order_by(TareaAprobacion.id.asc())
        .limit(limite)
        .all()
    ]

    stats = {"procesadas": 0, "fallidas": 0}
    for tarea_id in ids:
        try:
            procesar_tarea_aprobacion(db, tarea_id)
            stats["procesadas"] += 1
        except Exception as e:
            stats["fallidas"] += 1
            logger.warning(f"Tarea de aprobación #{tarea_id} sigue pendiente: {e}")

    if ids:
        logger.info(f"Reintento de aprobaciones: {stats}")
    return stats


# ═════════════════════════════════════════════════════════════════════════════
# ESTADÍSTICAS
# ═════════════════════════════════════════════════════════════════════════════

def estadisticas_inspecciones(db: Session, ctx: ContextoSolicitud, hoy: Optional[date] = None) -> dict:
    exigir_permiso(ctx, "reportes.ver")
    hoy = hoy or datetime.now(timezone.utc).date()
    inicio_mes = datetime(hoy.year, hoy.month, 1)

    por_estado = {
        estado: cantidad
        for estado, cantidad in db.query(Inspeccion.estado, func.count(Inspeccion.id))
        .group_by(Inspeccion.estado)
        .all()
    }
    este_mes = db.query(func.count(Inspeccion.id)).filter(Inspeccion.created_at >= inicio_mes).scalar()

    montos = db.query(
        func.count(Inspeccion.id), func.coalesce(func.sum(Inspeccion.monto_estimado), 0)
    ).filter(
        Inspeccion.estado == EstadoInspeccion.COMPLETADA.value,
        Inspeccion.monto_estimado.isnot(None),
    ).first()

    return {
        "total": sum(por_estado.values()),
        "por_estado": por_estado,
        "este_mes": este_mes or 0,
        "aprobadas_con_estimacion": montos[0] or 0,
        "monto_estimado_total": float(dinero(montos[1] or Decimal("0"))),
        "tareas_pendientes": db.query(func.count(TareaAprobacion.id))
        .filter(TareaAprobacion.estado == EstadoTarea.PENDIENTE.value)
        .scalar() or 0,
    }
