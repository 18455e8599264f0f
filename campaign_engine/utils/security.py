# campaign_engine/utils/security.py
from datetime import timedelta
from typing import Optional, Dict, Any
import jwt
import uuid
import logging

from ..config.settings import settings
from .timezone_helper import utc_now

logger = logging.getLogger(__name__)


class SecurityManager:
    """Issues and verifies the bearer tokens the campaign API accepts"""

    def __init__(self):
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm
        self.access_token_expire_minutes = settings.access_token_expire_minutes

    def create_access_token(self, data: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
        """Create JWT access token"""
        to_encode = data.copy()
        now = utc_now()
        expire = now + timedelta(minutes=expires_minutes or self.access_token_expire_minutes)

        to_encode.update({
            "exp": expire,
            "iat": now,
            "jti": str(uuid.uuid4()),
            "type": "access"
        })

        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode JWT token"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {e}")
            return None


security = SecurityManager()
