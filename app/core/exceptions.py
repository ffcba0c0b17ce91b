"""
Errores de dominio de Quiklii

Los servicios lanzan estas excepciones; main.py las convierte en respuestas
JSON con la forma {"success": false, "error": <kind>, "message": ...}.
"""
from typing import Any, Optional


class QuikliiError(Exception):
    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {
            "success": False,
            "error": self.kind,
            "message": self.message,
        }
        if self.details is not None:
            data["details"] = self.details
        return data


class ValidationError(QuikliiError):
    """Entrada inválida o incompleta, corregible por el usuario"""
    status_code = 400
    kind = "validation_error"


class AuthenticationError(QuikliiError):
    """Token de sesión o firma de webhook inválidos"""
    status_code = 401
    kind = "authentication_error"


class PermissionDeniedError(QuikliiError):
    status_code = 403
    kind = "permission_denied"


class NotFoundError(QuikliiError):
    status_code = 404
    kind = "not_found"


class ConflictError(QuikliiError):
    """Petición válida pero incompatible con el estado actual"""
    status_code = 409
    kind = "conflict"


class InvalidTransitionError(ConflictError):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Transición no permitida: {current} -> {target}",
            details={"current_status": current, "target_status": target}
        )
        self.current = current
        self.target = target


class InternalError(QuikliiError):
    """Base de datos o proveedor de pago no disponible"""
    status_code = 502
    kind = "internal_error"
