from flask import Blueprint
import logging

from models import db, Notification
from access import auth_required, current_identity
from responses import success_response, server_error_response

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)


# ============================================
# 1. 未讀通知數量
# ============================================

@notifications_bp.route('/counts', methods=['GET'])
@auth_required
def get_notification_counts():
    """取得當前使用者的未讀通知數量"""
    identity = current_identity()

    unread = Notification.query.filter_by(user_id=identity.user_id, is_read=False).count()

    return success_response('Notification count retrieved', {'unreadCount': unread})


# ============================================
# 2. 全部標記為已讀
# ============================================

@notifications_bp.route('/mark-read', methods=['POST'])
@auth_required
def mark_all_notifications_read():
    """標記所有通知為已讀"""
    identity = current_identity()

    try:
        updated = Notification.query.filter_by(user_id=identity.user_id, is_read=False)\
            .update({'is_read': True})
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Mark read error')

    logger.info(f"{updated} notifications marked read for user {identity.user_id}")

    return success_response('All notifications marked as read', {
        'markedRead': True,
        'count': updated
    })
