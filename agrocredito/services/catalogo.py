"""
Servicio: Catálogo de agricultores y parcelas
agrocredito/services/catalogo.py

Escrituras mínimas para dar de alta lo que el motor inspecciona y financia.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from agrocredito.middleware.autorizacion import ContextoSolicitud, exigir_permiso
from agrocredito.models import Agricultor, Parcela
from agrocredito.services.errores import NoEncontrado, ValidationError, confirmar
from agrocredito.services.politicas import a_decimal
from agrocredito.services.sujetos import normalizar_cedula

logger = logging.getLogger(__name__)


def registrar_agricultor(
    db: Session,
    ctx: ContextoSolicitud,
    cedula: str,
    nombre: str,
    telefono: Optional[str] = None,
    email: Optional[str] = None,
) -> Agricultor:
    exigir_permiso(ctx, "catalogo.registrar")
    cedula = normalizar_cedula(cedula)
    if not (nombre or "").strip():
        raise ValidationError("El nombre del agricultor es requerido", {"campo": "nombre"})

    existente = db.query(Agricultor).filter(Agricultor.cedula == cedula).first()
    if existente:
        raise ValidationError(f"Ya existe un agricultor con cédula {cedula}", {"cedula": cedula})

    agricultor = Agricultor(cedula=cedula, nombre=nombre.strip(), telefono=telefono, email=email)
    db.add(agricultor)
    confirmar(db)
    db.refresh(agricultor)
    logger.info(f"Agricultor #{agricultor.id} registrado ({cedula})")
    return agricultor


def registrar_parcela(
    db: Session,
    ctx: ContextoSolicitud,
    agricultor_id: int,
    nombre: str,
    area_hectareas: Optional[Decimal] = None,
    cultivo_principal: Optional[str] = None,
) -> Parcela:
    exigir_permiso(ctx, "catalogo.registrar")
    if not (nombre or "").strip():
        raise ValidationError("El nombre de la parcela es requerido", {"campo": "nombre"})
    if area_hectareas is not None:
        area_hectareas = a_decimal(area_hectareas, "area_hectareas", limite=Decimal("1e8"))
    if area_hectareas is not None and area_hectareas <= 0:
        raise ValidationError("El área debe ser mayor a cero", {"campo": "area_hectareas"})

    agricultor = db.query(Agricultor).filter(Agricultor.id == agricultor_id).first()
    if not agricultor:
        raise NoEncontrado("Agricultor no encontrado", {"agricultor_id": agricultor_id})

    parcela = Parcela(
        agricultor_id=agricultor.id,
        nombre=nombre.strip(),
        area_hectareas=area_hectareas,
        cultivo_principal=cultivo_principal,
    )
    db.add(parcela)
    confirmar(db)
    db.refresh(parcela)
    return parcela
