import logging
from typing import Optional
from sqlalchemy.orm import Session
from app.models.user import User
from app.core.security import create_access_token, decode_token, token_user_id

logger = logging.getLogger(__name__)


class AuthService:
    """
    Los tokens los emite el servicio de cuentas; aquí solo se validan.
    create_access_token_for_user existe para datos semilla y pruebas.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_access_token_for_user(self, user: User) -> str:
        return create_access_token(user.id, user.role)

    def get_current_user(self, token: str) -> Optional[User]:
        """Obtener usuario activo desde token, None si no es válido"""
        claims = decode_token(token)
        if not claims:
            logger.debug("[Auth] Token inválido o expirado")
            return None

        user_id = token_user_id(claims)
        if user_id is None:
            logger.debug(f"[Auth] 'sub' ausente o no numérico: {claims.get('sub')}")
            return None

        user = self.db.query(User).filter(
            User.id == user_id,
            User.is_active == True
        ).first()

        if not user:
            logger.info(f"[Auth] Usuario {user_id} no existe o está inactivo")
            return None
        return user
