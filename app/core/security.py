"""
Seguridad - Quiklii

El token de sesión lo emite el servicio de cuentas con estos claims:
- sub: id del usuario (string)
- role: customer | restaurant_owner | delivery_person | admin
- exp: vencimiento

Este backend solo lo valida. Los helpers de emisión existen para los
datos semilla y las pruebas.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from app.core.config import settings

# Contraseñas de los usuarios semilla
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(user_id: int, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Token de sesión para un usuario de Quiklii"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """
    Decodificar y validar token JWT

    Returns:
        Claims del token si la firma y el vencimiento son válidos, None si no
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None


def token_user_id(claims: dict) -> Optional[int]:
    """Id del usuario en 'sub'; None si falta o no es numérico"""
    try:
        return int(claims["sub"])
    except (KeyError, ValueError, TypeError):
        return None
