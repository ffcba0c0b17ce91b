"""
Conexión a base de datos (SQLAlchemy)
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import ConflictError, InternalError

logger = logging.getLogger(__name__)

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite y FastAPI comparten la conexión entre hilos
    connect_args = {"check_same_thread": False}

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Para conexiones largas (WebSocket): abren una sesión corta por consulta"""
    return SessionLocal


def commit_or_rollback(db: Session):
    """
    Confirma la transacción. Si otro proceso cambió la fila (versión
    distinta) lanza ConflictError; cualquier otro error de base de datos
    hace rollback y se reporta como InternalError.
    """
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise ConflictError("El registro fue modificado por otra operación, vuelve a intentarlo")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[DB] ❌ Error confirmando transacción: {str(e)}")
        raise InternalError("Error guardando en base de datos")
