"""
Tarea: Política de incumplimiento
agrocredito/tasks/conciliar_incumplimientos.py

Marca como incumplidos los financiamientos cuyo plazo esperado
(numero_cosechas × meses_por_cosecha + días de gracia) ya venció sin
quedar saldados. Correrla dos veces el mismo día no cambia nada.

Una vez al día:
    'aplicar-incumplimientos': {
        'task': 'agrocredito.tasks.conciliar_incumplimientos.aplicar_politica_incumplimiento',
        'schedule': crontab(hour=2, minute=0),
    }
"""

import logging
from datetime import date
from typing import Optional

from agrocredito.tasks.procesar_aprobaciones import CONTEXTO_SISTEMA

logger = logging.getLogger(__name__)


def aplicar_politica_incumplimiento(session_factory=None, hoy: Optional[date] = None, config: Optional[dict] = None):
    from agrocredito.database import SessionLocal
    from agrocredito.services.politicas import aplicar_incumplimientos

    db = (session_factory or SessionLocal)()

    try:
        marcados = aplicar_incumplimientos(db, CONTEXTO_SISTEMA, hoy=hoy, config=config)
        return {"marcados": marcados}

    except Exception as e:
        logger.error(f"Error aplicando incumplimientos: {e}", exc_info=True)
        return {"error": str(e)}

    finally:
        db.close()
