"""
Dependencias de autenticación para los routers
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import AuthenticationError, PermissionDeniedError
from app.models.user import User, UserRole
from app.services.auth_service import AuthService
from app.services.order_service import Actor

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Token requerido")

    user = AuthService(db).get_current_user(credentials.credentials)
    if user is None:
        raise AuthenticationError("Token inválido o expirado")
    return user


def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Solo administradores"""
    if current_user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Solo administradores pueden realizar esta acción")
    return current_user
