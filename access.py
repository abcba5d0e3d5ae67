from functools import wraps
from flask import current_app, g, request
from responses import error_response
import logging

logger = logging.getLogger(__name__)

BEARER_PREFIX = 'Bearer '


class AccessMediator:
    """
    從 request 取出 Bearer token 並交給 TokenService 驗證

    沒有 header 或格式錯誤時直接回傳 None,不會呼叫 TokenService
    """

    def __init__(self, token_service):
        self.token_service = token_service

    @staticmethod
    def extract_token(request):
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith(BEARER_PREFIX):
            return None
        token = auth_header[len(BEARER_PREFIX):].strip()
        return token or None

    def authenticate(self, request):
        token = self.extract_token(request)
        if token is None:
            return None
        return self.token_service.verify(token)


def get_access_mediator():
    return current_app.extensions['access_mediator']


def auth_required(view):
    """
    保護路由的裝飾器

    驗證失敗 (沒帶 token / 簽章錯誤 / 過期) 都回同一個 401 訊息,
    不讓前端知道是哪一個檢查失敗
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        identity = get_access_mediator().authenticate(request)
        if identity is None:
            logger.warning(f"Unauthorized access attempt from: {request.remote_addr} to {request.path}")
            return error_response('Authentication required', 'No valid token', 401)

        g.identity = identity
        return view(*args, **kwargs)

    return wrapper


def current_identity():
    """取得目前 request 的 identity (只能在 @auth_required 的 view 裡用)"""
    return g.get('identity')


# ============================================
# 資源層級的權限檢查
# ============================================

def can_access_task(task, identity):
    """admin 可以存取所有任務,一般使用者只能存取自己建立或被指派的任務"""
    if identity.is_admin:
        return True
    return task.created_by == identity.user_id or task.assigned_to == identity.user_id


def can_delete_task(task, identity):
    return identity.is_admin or task.created_by == identity.user_id


def can_manage_project(project, identity):
    """只有 owner 或 admin 能修改/刪除專案"""
    return identity.is_admin or project.user_id == identity.user_id
