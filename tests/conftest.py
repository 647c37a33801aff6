"""Fixtures compartidos: base SQLite temporal por test, contextos por rol y datos de catálogo."""

from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

import agrocredito.models  # noqa: F401  registra las tablas en Base.metadata
from agrocredito.database import Base, crear_engine
from agrocredito.middleware.autorizacion import ContextoSolicitud, Rol
from agrocredito.models import Agricultor, SujetoProductivo
from agrocredito.services.catalogo import registrar_agricultor, registrar_parcela
from agrocredito.services.inspecciones import (
    aprobar_inspeccion,
    crear_inspeccion,
    programar_inspeccion,
)
from agrocredito.services.sujetos import normalizar_cedula


@pytest.fixture
def engine(tmp_path):
    engine = crear_engine(f"sqlite:///{tmp_path / 'agrocredito_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def admin():
    return ContextoSolicitud(usuario_id="admin-1", rol=Rol.ADMIN)


@pytest.fixture
def operador():
    return ContextoSolicitud(usuario_id="operador-1", rol=Rol.OPERADOR)


@pytest.fixture
def agricultor_ctx():
    return ContextoSolicitud(usuario_id="agricultor-1", rol=Rol.AGRICULTOR, cedula="V-12.345.678")


@pytest.fixture
def nueva_parcela(db, operador):
    """Registra (o reutiliza) el agricultor y le agrega una parcela."""
    def _nueva(cedula="V12345678", nombre="Juan Pérez", parcela="P1"):
        agricultor = db.query(Agricultor).filter(Agricultor.cedula == normalizar_cedula(cedula)).first()
        if agricultor is None:
            agricultor = registrar_agricultor(db, operador, cedula, nombre, telefono="0414-5550000")
        return registrar_parcela(db, operador, agricultor.id, parcela, area_hectareas=5, cultivo_principal="maiz")
    return _nueva


@pytest.fixture
def inspeccion_programada(db, operador, nueva_parcela):
    def _programada(parcela=None, **kwargs):
        parcela = parcela or nueva_parcela(**kwargs)
        inspeccion = crear_inspeccion(db, operador, parcela.id)
        return programar_inspeccion(db, operador, inspeccion.id, date(2026, 3, 1))
    return _programada


@pytest.fixture
def parcela_aprobada(db, operador, nueva_parcela, inspeccion_programada):
    """Parcela con inspección aprobada y estimación; retorna (parcela, sujeto)."""
    def _aprobada(monto=10000, cedula="V12345678", nombre="Juan Pérez", parcela="P1"):
        p = nueva_parcela(cedula=cedula, nombre=nombre, parcela=parcela)
        inspeccion = inspeccion_programada(parcela=p)
        aprobar_inspeccion(db, operador, inspeccion.id, notas="Cultivo en buen estado", monto_estimado=monto)
        sujeto = (
            db.query(SujetoProductivo)
            .filter(SujetoProductivo.cedula == normalizar_cedula(cedula))
            .one()
        )
        return p, sujeto
    return _aprobada
