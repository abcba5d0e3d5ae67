from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional
import logging

import jwt

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=7)


class Role(str, Enum):
    USER = 'user'
    ADMIN = 'admin'

    @classmethod
    def parse(cls, value) -> Optional['Role']:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class Identity:
    """已驗證的使用者身份 (id, email, role)"""
    user_id: int
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str
    role: Role
    issued_at: datetime
    expires_at: datetime

    @property
    def identity(self) -> Identity:
        return Identity(self.user_id, self.email, self.role)

    # 讓 view 可以直接把 claims 當 identity 用
    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """
    簽發和驗證 JWT

    - secret 由外部注入 (app 啟動時從 config 讀一次),方便單獨測試
    - 無狀態: 沒有 server 端的撤銷清單,過期只在 verify 時檢查
    - verify 失敗一律回傳 None,不丟 exception
    """

    def __init__(self, secret: str, ttl: timedelta = DEFAULT_TOKEN_TTL,
                 algorithm: str = 'HS256', clock: Optional[Callable[[], datetime]] = None):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self.algorithm = algorithm
        self._clock = clock or _utcnow

    def issue(self, identity: Identity) -> str:
        issued_at = self._clock().replace(microsecond=0)
        payload = {
            'userId': identity.user_id,
            'email': identity.email,
            'role': Role(identity.role).value,
            'iat': issued_at,
            'exp': issued_at + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[TokenClaims]:
        if not token or not isinstance(token, str):
            return None

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={'require': ['exp', 'iat']},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            return None
        except jwt.PyJWTError as e:
            logger.info(f"Rejected invalid token: {e.__class__.__name__}")
            return None

        user_id = payload.get('userId')
        email = payload.get('email')
        role = Role.parse(payload.get('role'))

        # bool 是 int 的子類別,要排除
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            return None
        if not isinstance(email, str) or role is None:
            return None

        return TokenClaims(
            user_id=user_id,
            email=email,
            role=role,
            issued_at=datetime.fromtimestamp(payload['iat'], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload['exp'], tz=timezone.utc),
        )
