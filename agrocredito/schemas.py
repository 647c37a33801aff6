"""
Payloads JSON versionados
agrocredito/schemas.py

Los blobs que viajan con inspecciones y financiamientos se guardan con
"schema_version". Lo que no calza con una versión conocida se conserva
como DatosCrudos en vez de fallar.
"""

from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class DatosCrudos(BaseModel):
    schema_version: Optional[int] = None
    datos: Dict[str, Any] = Field(default_factory=dict)


class FormularioInspeccionV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: Literal[1] = 1
    area_hectareas: Optional[Decimal] = Field(default=None, ge=0)
    rendimiento_kg_ha: Optional[Decimal] = Field(default=None, ge=0)
    precio_kg: Optional[Decimal] = Field(default=None, ge=0)
    calificacion_calidad: Optional[int] = Field(default=None, ge=1, le=5)
    cultivo: Optional[str] = None
    observaciones: Optional[str] = None

    def valor_estimado(self) -> Optional[Decimal]:
        """area * rendimiento * precio, si el formulario trae los tres."""
        if self.area_hectareas is None or self.rendimiento_kg_ha is None or self.precio_kg is None:
            return None
        return self.area_hectareas * self.rendimiento_kg_ha * self.precio_kg


class MetadatosFinanciamientoV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: Literal[1] = 1
    cultivo: Optional[str] = None
    frecuencia_pago: Optional[str] = None       # "por_cosecha", "mensual"
    metodo_amortizacion: Optional[Literal["frances", "lineal"]] = None
    observaciones: Optional[str] = None


FormularioInspeccion = Union[FormularioInspeccionV1, DatosCrudos]
MetadatosFinanciamiento = Union[MetadatosFinanciamientoV1, DatosCrudos]


def _parsear(datos, modelos: dict):
    if datos is None:
        return None
    if isinstance(datos, dict):
        modelo = modelos.get(datos.get("schema_version"))
        if modelo is not None:
            try:
                return modelo.model_validate(datos)
            except ValidationError:
                pass
        version = datos.get("schema_version")
        return DatosCrudos(
            schema_version=version if isinstance(version, int) else None,
            datos={k: v for k, v in datos.items() if k != "schema_version"},
        )
    return DatosCrudos(datos={"valor": datos})


def parsear_formulario(datos) -> Optional[FormularioInspeccion]:
    return _parsear(datos, {1: FormularioInspeccionV1})


def parsear_metadatos(datos) -> Optional[MetadatosFinanciamiento]:
    return _parsear(datos, {1: MetadatosFinanciamientoV1})


def serializar(payload) -> Optional[dict]:
    """Vuelve a dict JSON para guardar en la columna."""
    if payload is None:
        return None
    if isinstance(payload, DatosCrudos):
        datos = dict(payload.datos)
        if payload.schema_version is not None:
            datos["schema_version"] = payload.schema_version
        return datos
    return payload.model_dump(mode="json", exclude_none=True)
