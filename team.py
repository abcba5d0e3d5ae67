from flask import Blueprint
from datetime import datetime, timedelta
import logging

from models import db, User, Task
from access import auth_required, current_identity, can_access_task, can_delete_task
from responses import success_response

team_bp = Blueprint('team', __name__)
logger = logging.getLogger(__name__)

RECENT_TASK_WINDOW = timedelta(days=30)
ACTIVITY_WINDOW = timedelta(hours=24)
TOP_PERFORMER_RATE = 80
ATTENTION_RATE = 50


# ============================================
# 統計計算 (純函數,不碰資料庫)
# ============================================

def _count(tasks, **conditions):
    return sum(
        1 for task in tasks
        if all(getattr(task, field) == value for field, value in conditions.items())
    )


def completion_rate(completed, total):
    """完成率百分比,四捨五入到整數"""
    if not total:
        return 0
    return int(completed * 100 / total + 0.5)


def member_stats(user, tasks, now):
    """單一成員的任務統計 (建立或被指派的任務都算)"""
    today = now.date()
    related = [t for t in tasks if t.created_by == user.id or t.assigned_to == user.id]
    created = [t for t in related if t.created_by == user.id]
    assigned = [t for t in related if t.assigned_to == user.id]

    completed = _count(related, status='done')
    updates = [t.updated_at for t in related if t.updated_at is not None]
    last_active = max(updates) if updates else None

    return {
        'id': user.id,
        'name': user.name or user.email.split('@')[0],
        'email': user.email,
        'role': user.role,
        'created_at': user.created_at.isoformat() if user.created_at else None,

        'taskCount': len(related),
        'createdCount': len(created),
        'assignedCount': len(assigned),
        'completedCount': completed,
        'inProgressCount': _count(related, status='in_progress'),
        'pendingCount': _count(related, status='todo'),
        'reviewCount': _count(related, status='review'),
        'pausedCount': _count(related, status='paused'),
        'overdueCount': sum(1 for t in related if t.is_overdue(today)),
        'highPriorityCount': _count(related, priority='high'),
        'mediumPriorityCount': _count(related, priority='medium'),
        'lowPriorityCount': _count(related, priority='low'),

        'completionRate': completion_rate(completed, len(related)),
        'lastActive': last_active.isoformat() if last_active else None,
        'taskIds': [t.id for t in related]
    }


def team_stats(members, tasks, now):
    """整個團隊的統計,members 是 member_stats() 的結果"""
    today = now.date()
    recent_since = now - RECENT_TASK_WINDOW

    top_performers = sorted(
        (m for m in members if m['taskCount'] > 0 and m['completionRate'] >= TOP_PERFORMER_RATE),
        key=lambda m: m['completionRate'],
        reverse=True
    )[:5]

    needing_attention = [
        m for m in members
        if m['overdueCount'] > 0 or (m['taskCount'] > 0 and m['completionRate'] < ATTENTION_RATE)
    ]

    return {
        'totalMembers': len(members),
        'adminCount': sum(1 for m in members if m['role'] == 'admin'),
        'userCount': sum(1 for m in members if m['role'] == 'user'),

        'totalTasks': len(tasks),
        'completedTasks': _count(tasks, status='done'),
        'inProgressTasks': _count(tasks, status='in_progress'),
        'todoTasks': _count(tasks, status='todo'),
        'reviewTasks': _count(tasks, status='review'),
        'pausedTasks': _count(tasks, status='paused'),
        'overdueTasks': sum(1 for t in tasks if t.is_overdue(today)),

        'highPriorityTasks': _count(tasks, priority='high'),
        'mediumPriorityTasks': _count(tasks, priority='medium'),
        'lowPriorityTasks': _count(tasks, priority='low'),

        'activeMembers': sum(1 for m in members if m['inProgressCount'] > 0),
        'avgCompletionRate': (
            int(sum(m['completionRate'] for m in members) / len(members) + 0.5) if members else 0
        ),
        'recentTasks': sum(1 for t in tasks if t.created_at is not None and t.created_at >= recent_since),

        'topPerformers': [{
            'id': m['id'],
            'name': m['name'],
            'completionRate': m['completionRate'],
            'taskCount': m['taskCount']
        } for m in top_performers],
        'membersNeedingAttention': [{
            'id': m['id'],
            'name': m['name'],
            'overdueCount': m['overdueCount'],
            'completionRate': m['completionRate']
        } for m in needing_attention]
    }


def summary_by_role(members):
    summary = {}
    for role in ('admin', 'user'):
        group = [m for m in members if m['role'] == role]
        summary[role] = {
            'count': len(group),
            'totalTasks': sum(m['taskCount'] for m in group),
            'avgCompletionRate': (
                int(sum(m['completionRate'] for m in group) / len(group) + 0.5) if group else 0
            )
        }
    return summary


# ============================================
# 團隊 Dashboard
# ============================================

@team_bp.route('/dashboard', methods=['GET'])
@auth_required
def get_dashboard():
    """
    團隊 dashboard

    所有人都看得到每個成員的統計數字,但任務明細只列出
    自己有權限看的任務 (admin 全部)
    """
    identity = current_identity()
    now = datetime.utcnow()

    users = User.query.order_by(User.name.asc()).all()
    tasks = Task.query.order_by(Task.created_at.desc()).all()

    members = []
    for user in users:
        stats = member_stats(user, tasks, now)
        stats['tasks'] = [
            dict(
                task.to_dict(),
                canEdit=True,
                canDelete=can_delete_task(task, identity)
            )
            for task in tasks
            if (task.created_by == user.id or task.assigned_to == user.id) and can_access_task(task, identity)
        ]
        # 只列出看得到的任務 id,別人私有任務的 id 也不外露
        stats['taskIds'] = [task['id'] for task in stats['tasks']]
        members.append(stats)

    logger.info(f"Team dashboard requested by user {identity.user_id} ({identity.role.value})")

    return success_response('Team dashboard retrieved successfully', {
        'teamStats': team_stats(members, tasks, now),
        'members': members,
        'currentUser': {
            'id': identity.user_id,
            'role': identity.role.value
        }
    })


@team_bp.route('/activity-count', methods=['GET'])
@auth_required
def get_activity_count():
    """最近 24 小時有登入或有任務更新的成員數"""
    since = datetime.utcnow() - ACTIVITY_WINDOW

    active_ids = {
        user_id for (user_id,) in db.session.query(User.id).filter(User.last_login >= since)
    }
    for created_by, assigned_to in db.session.query(Task.created_by, Task.assigned_to).filter(Task.updated_at >= since):
        active_ids.update(uid for uid in (created_by, assigned_to) if uid is not None)

    return success_response('Team activity count retrieved', {'activeMembers': len(active_ids)})
