"""
Módulo: Crédito Agrícola — Modelos SQLAlchemy
agrocredito/models.py

Principios aplicados:
1. IDENTIFICABILIDAD: Un solo sujeto productivo por cédula
2. INMUTABILIDAD: Las inspecciones no se borran, transicionan; los pagos no se editan
3. CONSERVACIÓN: monto_retenido + ganancia_agricultor == monto_venta en cada pago
4. TRAZABILIDAD: total_pagado de un financiamiento == suma de lo retenido en sus pagos
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, Date, Numeric, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


# ═══════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════

class EstadoInspeccion(str, enum.Enum):
    """Ciclo de vida de una inspección de campo."""
    PENDIENTE = "pendiente"
    PROGRAMADA = "programada"
    EN_PROGRESO = "en_progreso"
    COMPLETADA = "completada"       # Aprobada
    CANCELADA = "cancelada"         # Rechazada


ESTADOS_INSPECCION_ABIERTA = (
    EstadoInspeccion.PENDIENTE.value,
    EstadoInspeccion.PROGRAMADA.value,
    EstadoInspeccion.EN_PROGRESO.value,
)

ESTADOS_INSPECCION_TERMINAL = (
    EstadoInspeccion.COMPLETADA.value,
    EstadoInspeccion.CANCELADA.value,
)


class EstadoFinanciamiento(str, enum.Enum):
    ACTIVO = "activo"
    EN_SEGUIMIENTO = "en_seguimiento"   # Ya recibió al menos un pago
    COSECHADO = "cosechado"             # Saldado
    INCUMPLIDO = "incumplido"           # Marcado por la política de mora


ESTADOS_FINANCIAMIENTO_VIGENTE = (
    EstadoFinanciamiento.ACTIVO.value,
    EstadoFinanciamiento.EN_SEGUIMIENTO.value,
)


class EstadoTarea(str, enum.Enum):
    PENDIENTE = "pendiente"
    PROCESADA = "procesada"


# ═══════════════════════════════════════════════════════════
# CATÁLOGO: AGRICULTORES Y PARCELAS
# ═══════════════════════════════════════════════════════════

class Agricultor(Base):
    __tablename__ = "agricultores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cedula = Column(String(20), unique=True, nullable=False, index=True)   # "V12345678"
    nombre = Column(String(200), nullable=False)
    telefono = Column(String(30), nullable=True)
    email = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    parcelas = relationship("Parcela", back_populates="agricultor")


class Parcela(Base):
    __tablename__ = "parcelas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agricultor_id = Column(Integer, ForeignKey("agricultores.id"), nullable=True)
    nombre = Column(String(120), nullable=False)
    area_hectareas = Column(Numeric(10, 2), nullable=True)
    cultivo_principal = Column(String(60), nullable=True)   # maiz, arroz, cacao...
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agricultor = relationship("Agricultor", back_populates="parcelas")
    inspecciones = relationship("Inspeccion", back_populates="parcela", order_by="Inspeccion.id")


# ═══════════════════════════════════════════════════════════
# TABLA: INSPECCIONES
# ═══════════════════════════════════════════════════════════

class Inspeccion(Base):
    """
    Inspección de campo sobre una parcela.
    Solo cambia a través de la máquina de estados en services/inspecciones.py.
    """
    __tablename__ = "inspecciones"
    __table_args__ = (
        Index("ix_inspecciones_parcela_estado", "parcela_id", "estado"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    parcela_id = Column(Integer, ForeignKey("parcelas.id"), nullable=False)
    agricultor_id = Column(Integer, ForeignKey("agricultores.id"), nullable=False)

    estado = Column(String(20), nullable=False, default=EstadoInspeccion.PENDIENTE.value)
    prioridad = Column(String(10), default="media")     # baja, media, alta
    notas = Column(Text, nullable=True)
    motivo_rechazo = Column(Text, nullable=True)

    # Valor estimado de la cosecha al aprobar (alimenta la estimación de la parcela)
    monto_estimado = Column(Numeric(14, 2), nullable=True)

    # JSON versionado: {"schema_version": 1, ...}; ver schemas.py
    datos_formulario = Column(JSON, nullable=True)

    # === TEMPORALIDAD ===
    fecha_programada = Column(Date, nullable=True)
    iniciada_at = Column(DateTime(timezone=True), nullable=True)
    aprobada_at = Column(DateTime(timezone=True), nullable=True)
    cancelada_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    parcela = relationship("Parcela", back_populates="inspecciones")
    agricultor = relationship("Agricultor")


class EstimacionParcela(Base):
    """
    Valor estimado de cosecha de una parcela, producido al aprobar su inspección.
    Una sola estimación vigente por parcela: la re-inspección reemplaza, no suma.
    """
    __tablename__ = "estimaciones_parcela"
    __table_args__ = (
        UniqueConstraint("inspeccion_id", name="uq_estimacion_inspeccion"),
        Index("ix_estimaciones_parcela_vigente", "parcela_id", "vigente"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    parcela_id = Column(Integer, ForeignKey("parcelas.id"), nullable=False)
    inspeccion_id = Column(Integer, ForeignKey("inspecciones.id"), nullable=False)
    monto_estimado = Column(Numeric(14, 2), nullable=False)
    vigente = Column(Boolean, nullable=False, default=True)
    computed_at = Column(DateTime(timezone=True), server_default=func.now())
    reemplazada_at = Column(DateTime(timezone=True), nullable=True)

    parcela = relationship("Parcela")


class TareaAprobacion(Base):
    """
    Outbox del efecto secundario de aprobar una inspección.
    Se crea en la misma transacción que el cambio a 'completada';
    se procesa (registro del sujeto + estimación) una sola vez.
    """
    __tablename__ = "tareas_aprobacion"
    __table_args__ = (
        UniqueConstraint("inspeccion_id", name="uq_tarea_inspeccion"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    inspeccion_id = Column(Integer, ForeignKey("inspecciones.id"), nullable=False)
    estado = Column(String(20), nullable=False, default=EstadoTarea.PENDIENTE.value)
    intentos = Column(Integer, nullable=False, default=0)
    ultimo_error = Column(Text, nullable=True)
    sujeto_id = Column(Integer, ForeignKey("sujetos_productivos.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    procesada_at = Column(DateTime(timezone=True), nullable=True)

    inspeccion = relationship("Inspeccion")


# ═══════════════════════════════════════════════════════════
# TABLA: SUJETOS PRODUCTIVOS
# ═══════════════════════════════════════════════════════════

class SujetoProductivo(Base):
    """Identidad financiable de un agricultor. La cédula no cambia una vez fijada."""
    __tablename__ = "sujetos_productivos"
    __table_args__ = (
        UniqueConstraint("cedula", name="uq_sujeto_cedula"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cedula = Column(String(20), nullable=False)
    nombre = Column(String(200), nullable=True)
    telefono = Column(String(30), nullable=True)
    email = Column(String(120), nullable=True)
    direccion = Column(String(250), nullable=True)
    actividad = Column(String(120), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    financiamientos = relationship("Financiamiento", back_populates="sujeto", order_by="Financiamiento.id")

    __mapper_args__ = {"version_id_col": version}


# ═══════════════════════════════════════════════════════════
# TABLA: FINANCIAMIENTOS
# ═══════════════════════════════════════════════════════════

class Financiamiento(Base):
    """
    Crédito de corto plazo que se repaga con la venta de la cosecha.
    total_pagado solo lo modifica el motor de repago (services/pagos.py).
    """
    __tablename__ = "financiamientos"
    __table_args__ = (
        CheckConstraint("monto > 0", name="ck_financiamiento_monto_positivo"),
        CheckConstraint("total_pagado >= 0", name="ck_financiamiento_pagado_no_negativo"),
        CheckConstraint("total_pagado <= monto", name="ck_financiamiento_pagado_tope"),
        Index("ix_financiamientos_sujeto_estado", "sujeto_id", "estado"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    sujeto_id = Column(Integer, ForeignKey("sujetos_productivos.id"), nullable=False)
    parcela_id = Column(Integer, ForeignKey("parcelas.id"), nullable=False)

    # === CONDICIONES ===
    monto = Column(Numeric(14, 2), nullable=False)          # Capital
    tasa = Column(Numeric(8, 4), nullable=False)            # 0.10 = 10% por cosecha
    numero_cosechas = Column(Integer, nullable=False)
    proposito = Column(String(200), nullable=False)         # "insumos", "maquinaria"...
    fecha_inicio = Column(Date, nullable=False)

    # === ESTADO Y SALDO ===
    estado = Column(String(20), nullable=False, default=EstadoFinanciamiento.ACTIVO.value)
    total_pagado = Column(Numeric(14, 2), nullable=False, default=0)

    metadatos = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    sujeto = relationship("SujetoProductivo", back_populates="financiamientos")
    parcela = relationship("Parcela")
    pagos = relationship("Pago", back_populates="financiamiento", order_by="Pago.id")

    __mapper_args__ = {"version_id_col": version}

    @property
    def saldo_pendiente(self):
        return max(self.monto - self.total_pagado, 0)


# ═══════════════════════════════════════════════════════════
# TABLA: PAGOS (libro append-only)
# ═══════════════════════════════════════════════════════════

class Pago(Base):
    """Venta de cosecha registrada contra un financiamiento. No se modifica después de creada."""
    __tablename__ = "pagos"
    __table_args__ = (
        CheckConstraint("monto_venta > 0", name="ck_pago_venta_positiva"),
        Index("ix_pagos_financiamiento", "financiamiento_id"),
        Index("ix_pagos_sujeto_fecha", "sujeto_id", "fecha"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    sujeto_id = Column(Integer, ForeignKey("sujetos_productivos.id"), nullable=False)
    financiamiento_id = Column(Integer, ForeignKey("financiamientos.id"), nullable=False)

    fecha = Column(Date, nullable=False)
    monto_venta = Column(Numeric(14, 2), nullable=False)
    monto_retenido = Column(Numeric(14, 2), nullable=False)
    ganancia_agricultor = Column(Numeric(14, 2), nullable=False)

    metodo = Column(String(30), nullable=False)        # transferencia, efectivo, pago_movil...
    referencia = Column(String(100), nullable=True)    # referencia de cosecha / operación

    registrado_por = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    sujeto = relationship("SujetoProductivo")
    financiamiento = relationship("Financiamiento", back_populates="pagos")
