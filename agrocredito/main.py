import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL
from .database import Base, engine
from .services.errores import ErrorAgrocredito

# Importamos todos los routers
from .routers import catalogo, financiamientos, inspecciones, pagos, sujetos
from .routers.reportes import router as reportes_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="AgroCrédito — Inspección y Financiamiento")


@app.exception_handler(ErrorAgrocredito)
async def error_agrocredito_handler(request: Request, exc: ErrorAgrocredito):
    if exc.status_code >= 500:
        logger.error(f"{exc.codigo} en {request.url.path}: {exc.mensaje}")
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.on_event("startup")
def crear_tablas():
    Base.metadata.create_all(bind=engine)


app.include_router(catalogo.router)
app.include_router(inspecciones.router)
app.include_router(sujetos.router)
app.include_router(financiamientos.router)
app.include_router(pagos.router)
app.include_router(reportes_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
