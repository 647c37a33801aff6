"""
Middleware de Autorización
agrocredito/middleware/autorizacion.py

El rol llega como texto libre en el JWT del proveedor de identidad; se
normaliza UNA vez aquí a `Rol` y viaja explícito en `ContextoSolicitud`
hacia cada operación del motor.

Uso:
    @router.post("/financiamientos")
    async def crear(
        ctx: ContextoSolicitud = Depends(obtener_contexto),
        db: Session = Depends(get_db),
    ):
        ...
"""

import enum
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from agrocredito.config import ALGORITHM, SECRET_KEY
from agrocredito.services.errores import PermisoDenegado


class Rol(str, enum.Enum):
    ADMIN = "admin"
    OPERADOR = "operador"
    AGRICULTOR = "agricultor"


_ALIAS_ROL = {
    "admin": Rol.ADMIN,
    "administrador": Rol.ADMIN,
    "administrator": Rol.ADMIN,
    "superadmin": Rol.ADMIN,
    "operador": Rol.OPERADOR,
    "operator": Rol.OPERADOR,
    "inspector": Rol.OPERADOR,
    "tecnico": Rol.OPERADOR,
    "agricultor": Rol.AGRICULTOR,
    "farmer": Rol.AGRICULTOR,
    "productor": Rol.AGRICULTOR,
}


def normalizar_rol(texto: Optional[str]) -> Rol:
    """'Administrador', 'OPERATOR', ' farmer ' → Rol. Desconocido → PermisoDenegado."""
    clave = (texto or "").strip().lower()
    rol = _ALIAS_ROL.get(clave)
    if rol is None:
        raise PermisoDenegado(f"Rol no reconocido: '{texto}'", {"rol": texto})
    return rol


@dataclass(frozen=True)
class ContextoSolicitud:
    usuario_id: str
    rol: Rol
    cedula: Optional[str] = None   # Solo para agricultores: su propia identidad

    @property
    def es_admin(self) -> bool:
        return self.rol == Rol.ADMIN


# Quién puede ejecutar cada acción del motor
PERMISOS = {
    "inspecciones.crear": (Rol.ADMIN, Rol.OPERADOR),
    "inspecciones.transicionar": (Rol.ADMIN, Rol.OPERADOR),
    "inspecciones.aprobar": (Rol.ADMIN, Rol.OPERADOR),
    "inspecciones.rechazar": (Rol.ADMIN, Rol.OPERADOR),
    "inspecciones.reintentar": (Rol.ADMIN, Rol.OPERADOR),
    "sujetos.registrar": (Rol.ADMIN, Rol.OPERADOR),
    "catalogo.registrar": (Rol.ADMIN, Rol.OPERADOR),
    "financiamientos.crear": (Rol.ADMIN, Rol.OPERADOR),
    "financiamientos.estado": (Rol.ADMIN,),
    "financiamientos.incumplimiento": (Rol.ADMIN,),
    "pagos.registrar": (Rol.ADMIN, Rol.OPERADOR),
    "reportes.ver": (Rol.ADMIN, Rol.OPERADOR, Rol.AGRICULTOR),
}


def exigir_permiso(ctx: ContextoSolicitud, accion: str) -> None:
    """Verifica permiso específico: exigir_permiso(ctx, "pagos.registrar")"""
    permitidos = PERMISOS.get(accion, ())
    if ctx.rol not in permitidos:
        raise PermisoDenegado(
            f"Sin permiso para {accion}",
            {"rol_actual": ctx.rol.value, "accion": accion},
        )


def _decodificar_token(token: str) -> Optional[dict]:
    """Decodifica JWT y retorna el payload."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def obtener_contexto(request: Request) -> ContextoSolicitud:
    """Extrae identidad y rol del Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    payload = None
    if auth_header.startswith("Bearer "):
        payload = _decodificar_token(auth_header.replace("Bearer ", "", 1))

    usuario_id = (payload or {}).get("user_id") or (payload or {}).get("sub")
    if not usuario_id:
        raise HTTPException(
            status_code=401,
            detail={"error": "No autenticado", "codigo": "AUTH_REQUIRED"}
        )

    try:
        rol = normalizar_rol(payload.get("rol") or payload.get("role"))
    except PermisoDenegado as e:
        raise HTTPException(status_code=403, detail=e.as_dict())

    ctx = ContextoSolicitud(
        usuario_id=str(usuario_id),
        rol=rol,
        cedula=payload.get("cedula"),
    )
    request.state.contexto = ctx
    return ctx
