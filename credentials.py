from flask import current_app
from flask_bcrypt import Bcrypt
import logging

logger = logging.getLogger(__name__)


class CredentialVerifier:
    """
    密碼雜湊與驗證

    包一層 Flask-Bcrypt,每次 hash 都會產生新的 salt,
    verify 遇到格式錯誤的 hash 一律回傳 False,不丟 exception
    """

    def __init__(self, bcrypt=None, rounds=None):
        self._bcrypt = bcrypt or Bcrypt()
        self.rounds = rounds

    def hash(self, password):
        """回傳 bcrypt hash (str),cost factor 由 rounds 決定"""
        return self._bcrypt.generate_password_hash(password, self.rounds).decode('utf-8')

    def verify(self, password, password_hash):
        if not password or not password_hash:
            return False
        try:
            return self._bcrypt.check_password_hash(password_hash, password)
        except (ValueError, TypeError):
            # 資料庫裡的 hash 壞掉或不是 bcrypt 格式
            logger.warning("Password check against malformed hash")
            return False


def get_credentials():
    """從 Flask app extensions 取得 CredentialVerifier (不用 global variable)"""
    return current_app.extensions['credentials']
