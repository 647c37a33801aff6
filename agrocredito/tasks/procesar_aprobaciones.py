"""
Tarea: Reintento de aprobaciones pendientes (outbox)
agrocredito/tasks/procesar_aprobaciones.py

Toma las TareaAprobacion que quedaron pendientes (el registro del sujeto o
la estimación falló justo después de aprobar) y las vuelve a ejecutar.
Repetir una tarea ya procesada no duplica nada.

Programar cada pocos minutos con el planificador que use el despliegue:
    'reintentar-aprobaciones': {
        'task': 'agrocredito.tasks.procesar_aprobaciones.reintentar_aprobaciones',
        'schedule': 300.0,
    }
"""

import logging

from agrocredito.middleware.autorizacion import ContextoSolicitud, Rol

logger = logging.getLogger(__name__)

CONTEXTO_SISTEMA = ContextoSolicitud(usuario_id="sistema", rol=Rol.ADMIN)


def reintentar_aprobaciones(session_factory=None, limite: int = 50):
    from agrocredito.database import SessionLocal
    from agrocredito.services.inspecciones import procesar_tareas_pendientes

    db = (session_factory or SessionLocal)()

    try:
        return procesar_tareas_pendientes(db, CONTEXTO_SISTEMA, limite=limite)

    except Exception as e:
        logger.error(f"Error reintentando aprobaciones: {e}", exc_info=True)
        return {"error": str(e)}

    finally:
        db.close()
