"""Tests for versioned JSON payloads."""

from decimal import Decimal

from agrocredito.schemas import (
    DatosCrudos,
    FormularioInspeccionV1,
    MetadatosFinanciamientoV1,
    parsear_formulario,
    parsear_metadatos,
    serializar,
)


def test_v1_form_is_parsed():
    formulario = parsear_formulario({
        "schema_version": 1,
        "area_hectareas": "3.5",
        "rendimiento_kg_ha": 2000,
        "precio_kg": "0.4",
        "calificacion_calidad": 4,
    })

    assert isinstance(formulario, FormularioInspeccionV1)
    assert formulario.valor_estimado() == Decimal("2800.00")


def test_incomplete_v1_form_has_no_estimate():
    formulario = parsear_formulario({"schema_version": 1, "area_hectareas": 2})
    assert formulario.valor_estimado() is None


def test_unknown_version_is_kept_raw():
    crudo = parsear_formulario({"schema_version": 7, "dron": {"ndvi": 0.71}})

    assert isinstance(crudo, DatosCrudos)
    assert crudo.schema_version == 7
    assert serializar(crudo) == {"schema_version": 7, "dron": {"ndvi": 0.71}}


def test_legacy_payload_without_version_is_kept_raw():
    crudo = parsear_formulario({"observaciones": "formulario viejo"})
    assert isinstance(crudo, DatosCrudos)
    assert crudo.schema_version is None
    assert serializar(crudo) == {"observaciones": "formulario viejo"}


def test_invalid_v1_payload_degrades_to_raw():
    crudo = parsear_formulario({"schema_version": 1, "calificacion_calidad": 9})
    assert isinstance(crudo, DatosCrudos)
    assert crudo.datos == {"calificacion_calidad": 9}


def test_financing_metadata():
    meta = parsear_metadatos({"schema_version": 1, "metodo_amortizacion": "lineal", "extra": "ok"})
    assert isinstance(meta, MetadatosFinanciamientoV1)
    assert serializar(meta) == {"schema_version": 1, "metodo_amortizacion": "lineal", "extra": "ok"}

    assert isinstance(parsear_metadatos({"schema_version": 1, "metodo_amortizacion": "aleman"}), DatosCrudos)
    assert parsear_metadatos(None) is None
    assert serializar(None) is None
