from datetime import datetime, timezone


def utcnow() -> datetime:
    """Fecha UTC sin tzinfo, igual a como la devuelve la base de datos"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_now() -> str:
    """Marca de tiempo ISO-8601 para payloads de eventos"""
    return datetime.now(timezone.utc).isoformat()
