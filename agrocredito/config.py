"""
Configuración — AgroCrédito
agrocredito/config.py

Todo sale de variables de entorno; los valores por defecto sirven
para desarrollo local con SQLite.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agrocredito.db")

# JWT emitido por el proveedor de identidad externo
SECRET_KEY = os.getenv("JWT_SECRET", "your-secret-key")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Reintentos ante conflicto de versión en actualizaciones de saldo
MAX_REINTENTOS_CONCURRENCIA = int(os.getenv("MAX_REINTENTOS_CONCURRENCIA", "3"))

# Restar al monto elegible el capital de financiamientos vigentes
DESCONTAR_COMPROMETIDO = os.getenv("ELEGIBILIDAD_DESCONTAR_COMPROMETIDO", "false").lower() in ("1", "true", "si", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
