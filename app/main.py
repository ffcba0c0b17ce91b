# app/main.py
"""
Quiklii - Ciclo de vida de pedidos, pagos y notificaciones en tiempo real
Main Application Entry Point
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import QuikliiError
from app.core.logging import setup_logging
from app.services.realtime_service import notifier, room_manager
from app.services.refund_service import RefundService
from app.utils.dates import iso_now

# ========================================
# IMPORTAR ROUTERS API
# ========================================
from app.api.v1.api import api_router
from app.api.v1 import realtime

setup_logging()
logger = logging.getLogger(__name__)


# ========================================
# TAREA DE DEVOLUCIONES
# ========================================
async def process_refunds_once(session_factory=SessionLocal) -> Optional[dict]:
    """Un ciclo de la tarea; un error se registra y no detiene la tarea"""
    db = session_factory()
    try:
        return await RefundService(db).process_due_refunds()
    except Exception:
        logger.exception("[Refunds] ❌ Error en la tarea periódica, se reintenta en el próximo ciclo")
        return None
    finally:
        db.close()


async def refund_worker(interval: float, session_factory=SessionLocal):
    """Reintenta devoluciones vencidas cada `interval` segundos"""
    while True:
        await asyncio.sleep(interval)
        await process_refunds_once(session_factory)


# ========================================
# LIFESPAN EVENT
# ========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup y shutdown events"""

    # ===== STARTUP =====
    await notifier.bus.start()
    logger.info(f"🚀 {settings.APP_NAME} iniciado (tiempo real: {settings.REALTIME_BACKEND})")

    worker = None
    if settings.REFUND_WORKER_INTERVAL_SECONDS > 0:
        worker = asyncio.create_task(refund_worker(settings.REFUND_WORKER_INTERVAL_SECONDS))
        logger.info(f"[Refunds] Tarea periódica cada {settings.REFUND_WORKER_INTERVAL_SECONDS}s")

    yield

    # ===== SHUTDOWN =====
    if worker:
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
    await notifier.bus.stop()
    logger.info("👋 Servidor detenido")


# ========================================
# CREAR APP
# ========================================
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)


# ========================================
# MIDDLEWARE - CORS
# ========================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========================================
# MANEJO DE ERRORES
# ========================================
@app.exception_handler(QuikliiError)
async def quiklii_error_handler(request: Request, exc: QuikliiError):
    body = exc.to_dict()
    body["path"] = request.url.path
    body["timestamp"] = iso_now()
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Datos inválidos",
            "details": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
            "path": request.url.path,
            "timestamp": iso_now(),
        }
    )


# ========================================
# ROUTERS API (prefix /api/v1)
# ========================================
app.include_router(api_router, prefix=settings.API_V1_STR)
app.include_router(realtime.router)


@app.get("/health")
async def health():
    """Health check"""
    return {
        "status": "healthy",
        "app": settings.APP_NAME.lower(),
        "realtime": settings.REALTIME_BACKEND,
        "connections": room_manager.stats()["sessions"],
    }
