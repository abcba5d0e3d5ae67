from flask import Blueprint, request, current_app
from marshmallow import Schema, fields, validate, ValidationError, EXCLUDE
from sqlalchemy import or_
from datetime import datetime
import math
import re
import logging

from models import db, Task, Project, User, Notification, TASK_STATUSES, TASK_PRIORITIES, OPEN_TASK_STATUSES
from access import auth_required, current_identity, can_access_task, can_delete_task
from auth import validate_request_data
from querying import build_task_filter, fetch_page, parse_tags, DigitsInt, MAX_INT_VALUE
from responses import success_response, error_response, validation_error_response, server_error_response
from team import member_stats, team_stats, summary_by_role

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

UNASSIGNED_VALUES = (None, '', 'unassigned', 'null')
NO_PROJECT_VALUES = (None, '', 'none', 'null')

TASK_SELECT = """
    SELECT
        t.*,
        u_creator.name AS creator_name,
        u_creator.email AS creator_email,
        u_assignee.name AS assignee_name,
        u_assignee.email AS assignee_email,
        p.name AS project_name
"""

TASK_FROM = """
    FROM tasks t
    LEFT JOIN users u_creator ON t.created_by = u_creator.id
    LEFT JOIN users u_assignee ON t.assigned_to = u_assignee.id
    LEFT JOIN projects p ON t.project_id = p.id
"""


# ============================================
# Input Validation Schemas
# ============================================

def _not_blank(value):
    if not value.strip():
        raise ValidationError('Task title is required and must be a non-empty string')


class UpdateTaskSchema(Schema):
    """更新任務驗證"""

    class Meta:
        unknown = EXCLUDE

    title = fields.Str(validate=[validate.Length(max=255), _not_blank])
    description = fields.Str(allow_none=True, validate=validate.Length(max=5000))
    module_name = fields.Str(allow_none=True, validate=validate.Length(max=255))
    status = fields.Str(validate=validate.OneOf(
        TASK_STATUSES, error=f"Status must be one of: {', '.join(TASK_STATUSES)}"
    ))
    priority = fields.Str(validate=validate.OneOf(
        TASK_PRIORITIES, error=f"Priority must be one of: {', '.join(TASK_PRIORITIES)}"
    ))
    due_date = fields.Date(allow_none=True, error_messages={
        'invalid': 'Due date must be in YYYY-MM-DD format'
    })
    estimated_hours = fields.Float(allow_none=True, validate=validate.Range(
        min=0, error='Estimated hours must be a positive number'
    ))
    # 可以是 id,也可以是 "none" / "current" / "unassigned" 之類的字串
    project_id = fields.Raw(allow_none=True)
    assigned_to = fields.Raw(allow_none=True)
    tags = fields.List(fields.Str(), allow_none=True, error_messages={
        'invalid': 'Tags must be an array of strings'
    })


class CreateTaskSchema(UpdateTaskSchema):
    """建立任務驗證"""
    title = fields.Str(
        required=True,
        validate=[validate.Length(max=255), _not_blank],
        error_messages={'required': 'Task title is required'}
    )
    status = fields.Str(
        validate=validate.OneOf(TASK_STATUSES, error=f"Status must be one of: {', '.join(TASK_STATUSES)}"),
        load_default='todo'
    )
    priority = fields.Str(
        validate=validate.OneOf(TASK_PRIORITIES, error=f"Priority must be one of: {', '.join(TASK_PRIORITIES)}"),
        load_default='medium'
    )


# ============================================
# 輔助函數
# ============================================

def parse_optional_id(value, label, empty_values):
    """
    把前端傳來的 id 轉成 int

    empty_values 裡的值視為「沒有」,非數字的字串丟 ValueError (不會偷偷變成 0)
    """
    if value in empty_values:
        return None
    if isinstance(value, bool):
        raise ValueError(f'{label} must be a number')
    if isinstance(value, str) and DigitsInt.DIGITS.fullmatch(value.strip()):
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValueError(f'{label} must be a number')
    if not 1 <= value <= MAX_INT_VALUE:
        raise ValueError(f'{label} must be between 1 and {MAX_INT_VALUE}')
    return value


def resolve_assignee(identity, assigned_to):
    """
    決定任務的負責人

    - "current" 或自己的 id -> 自己
    - "unassigned" / "null" / 空字串 -> 沒有負責人
    - admin 可以指派給任何人,一般使用者只能指派給自己
    """
    if assigned_to == 'current' or str(assigned_to) == str(identity.user_id):
        return identity.user_id
    if assigned_to in UNASSIGNED_VALUES:
        return None

    assignee_id = parse_optional_id(assigned_to, 'Assignee ID', UNASSIGNED_VALUES)
    if not identity.is_admin:
        raise ValueError('You can only assign tasks to yourself or unassign')
    return assignee_id


def generate_module_name(user_label, now=None, subject='project'):
    """
    自動產生 module 名稱,格式: <月份>-Week<N>-<使用者>-<主題>

    例如: October-Week3-jane_doe-project
    """
    now = now or datetime.utcnow()
    month = now.strftime('%B')

    # 週一 = 1 ... 週日 = 7
    first_weekday = now.replace(day=1).isoweekday()
    week_number = math.ceil((now.day + first_weekday - 1) / 7)

    slug = re.sub(r'\s+', '_', user_label or 'user').lower()
    slug = re.sub(r'[^a-z0-9_]', '', slug)

    return f'{month}-Week{week_number}-{slug}-{subject}'


def create_task_notification(task, actor):
    """任務指派給別人時通知負責人"""
    if not task.assigned_to or task.assigned_to == actor.id:
        return None

    notification = Notification(
        user_id=task.assigned_to,
        type='task',
        title=f'{actor.display_name} assigned a task to you',
        message=f'Task: {task.title}'
    )
    db.session.add(notification)
    return notification


def format_task_row(row):
    """整理列表查詢回來的 row"""
    row['tags'] = parse_tags(row.get('tags'))
    if not row.get('creator_name') and row.get('creator_email'):
        row['creator_name'] = row['creator_email'].split('@')[0]
    if not row.get('assignee_name') and row.get('assignee_email'):
        row['assignee_name'] = row['assignee_email'].split('@')[0]
    return row


def _resolve_references(identity, result):
    """
    驗證 project_id / assigned_to 並轉成實際的值

    Returns:
        dict: 要寫入 Task 的欄位
    Raises:
        ValueError: 參數不合法
    """
    values = {}

    if 'project_id' in result:
        project_id = parse_optional_id(result['project_id'], 'Project ID', NO_PROJECT_VALUES)
        if project_id is not None and db.session.get(Project, project_id) is None:
            raise ValueError('Project does not exist')
        values['project_id'] = project_id

    if 'assigned_to' in result:
        assignee_id = resolve_assignee(identity, result['assigned_to'])
        if assignee_id is not None and db.session.get(User, assignee_id) is None:
            raise ValueError('Assigned user does not exist')
        values['assigned_to'] = assignee_id

    return values


# ============================================
# 查詢任務列表
# ============================================

@tasks_bp.route('', methods=['GET'])
@auth_required
def get_tasks():
    """
    查詢任務列表

    支援 projectId / status / priority / assignedTo / moduleName / search 篩選和分頁,
    一般使用者只會看到自己建立或被指派的任務
    """
    identity = current_identity()

    is_valid, query_filter = build_task_filter(
        request.args,
        identity,
        default_limit=current_app.config['DEFAULT_TASK_PAGE_SIZE'],
        max_limit=current_app.config['MAX_PAGE_SIZE']
    )
    if not is_valid:
        return validation_error_response(query_filter)

    rows, pagination = fetch_page(TASK_SELECT, TASK_FROM, query_filter, 't.created_at DESC, t.id DESC')

    return success_response('Tasks retrieved successfully', {
        'tasks': [format_task_row(row) for row in rows],
        'pagination': pagination
    })


# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@auth_required
def create_task():
    """建立任務,指派給別人時自動建立通知"""
    identity = current_identity()

    data = request.get_json(silent=True)
    if not data:
        return error_response('Validation failed', 'Request body must be JSON', 400)

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return validation_error_response(result)

    try:
        references = _resolve_references(identity, result)
    except ValueError as e:
        return error_response('Validation failed', str(e), 400)

    actor = db.session.get(User, identity.user_id)
    if actor is None:
        return error_response('User not found', 'User does not exist', 404)

    task = Task(
        title=result['title'].strip(),
        description=result.get('description') or None,
        module_name=result.get('module_name') or None,
        status=result['status'],
        priority=result['priority'],
        due_date=result.get('due_date'),
        estimated_hours=result.get('estimated_hours'),
        tags=result.get('tags') or None,
        project_id=references.get('project_id'),
        assigned_to=references.get('assigned_to'),
        created_by=identity.user_id
    )

    try:
        db.session.add(task)
        db.session.flush()  # 取得 task.id

        create_task_notification(task, actor)

        # 一次性 commit
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Task creation error')

    logger.info(f"Task created: {task.id} by user {identity.email}")

    return success_response('Task created successfully', {'task': task.to_dict()}, 201)


# ============================================
# 單一任務
# ============================================

def _load_task(task_id, identity):
    """
    取得任務並檢查權限

    Returns:
        tuple: (task, error_response)
    """
    task = db.session.get(Task, task_id)
    if task is None:
        return None, error_response('Task not found', 'No task with that ID', 404)

    if not can_access_task(task, identity):
        logger.warning(f"User {identity.user_id} denied access to task {task_id}")
        return None, error_response('Permission denied', 'You cannot access this task', 403)

    return task, None


@tasks_bp.route(f'/<int(max={MAX_INT_VALUE}):task_id>', methods=['GET'])
@auth_required
def get_task(task_id):
    """查詢單一任務 (admin / 建立者 / 負責人)"""
    identity = current_identity()

    task, error = _load_task(task_id, identity)
    if error:
        return error

    task_data = task.to_dict()
    task_data['canEdit'] = can_access_task(task, identity)
    task_data['canDelete'] = can_delete_task(task, identity)

    return success_response('Task retrieved successfully', {'task': task_data})


@tasks_bp.route(f'/<int(max={MAX_INT_VALUE}):task_id>', methods=['PUT'])
@auth_required
def update_task(task_id):
    """
    更新任務

    只更新有帶的欄位,module_name 傳空字串時自動產生
    """
    identity = current_identity()

    task, error = _load_task(task_id, identity)
    if error:
        return error

    data = request.get_json(silent=True)
    if not data:
        return error_response('No updates provided', 'Provide at least one field to update', 400)

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return error_response('No updates provided', 'Provide at least one field to update', 400)

    try:
        references = _resolve_references(identity, result)
    except ValueError as e:
        return error_response('Validation failed', str(e), 400)

    actor = db.session.get(User, identity.user_id)
    old_assignee = task.assigned_to

    if 'title' in result:
        task.title = result['title'].strip()
    if 'description' in result:
        task.description = result['description'] or None
    if 'module_name' in result:
        module_name = (result['module_name'] or '').strip()
        if not module_name:
            label = actor.name if actor and actor.name else identity.email
            module_name = generate_module_name(label)
        task.module_name = module_name
    for field in ('status', 'priority', 'due_date', 'estimated_hours'):
        if field in result:
            setattr(task, field, result[field])
    if 'tags' in result:
        task.tags = result['tags'] or None
    for field, value in references.items():
        setattr(task, field, value)

    task.updated_at = datetime.utcnow()

    try:
        if actor is not None and task.assigned_to != old_assignee:
            create_task_notification(task, actor)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Task update error')

    logger.info(f"Task {task_id} updated by user {identity.email}")

    return success_response('Task updated successfully', {'task': task.to_dict()})


@tasks_bp.route(f'/<int(max={MAX_INT_VALUE}):task_id>', methods=['DELETE'])
@auth_required
def delete_task(task_id):
    """刪除任務 (只有建立者或 admin)"""
    identity = current_identity()

    task = db.session.get(Task, task_id)
    if task is None:
        return error_response('Task not found', 'No task with that ID', 404)

    if not can_delete_task(task, identity):
        return error_response('Permission denied', 'You can only delete your own tasks', 403)

    try:
        db.session.delete(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Task deletion error')

    logger.info(f"Task deleted: {task_id} by user {identity.email}")

    return success_response('Task deleted successfully')


# ============================================
# 任務統計
# ============================================

@tasks_bp.route('/counts', methods=['GET'])
@auth_required
def get_task_counts():
    """待辦 / 逾期 / 今天到期的任務數量 (只算自己建立或被指派的)"""
    identity = current_identity()
    today = datetime.utcnow().date()

    mine = or_(Task.created_by == identity.user_id, Task.assigned_to == identity.user_id)

    pending = Task.query.filter(Task.status.in_(OPEN_TASK_STATUSES), mine).count()
    overdue = Task.query.filter(Task.due_date < today, Task.status != 'done', mine).count()
    due_today = Task.query.filter(Task.due_date == today, mine).count()

    return success_response('Task counts retrieved', {
        'pendingTasks': pending,
        'overdueTasks': overdue,
        'todayTasks': due_today
    })


@tasks_bp.route('/team', methods=['GET'])
@auth_required
def get_team_tasks():
    """
    團隊任務分析

    admin 看得到所有人 (可以用 userId 指定),一般使用者只看得到自己
    """
    identity = current_identity()

    stats_only = request.args.get('statsOnly') == 'true'
    include_tasks = request.args.get('includeTasks') == 'true'

    target_user_id = None
    if identity.is_admin and request.args.get('userId'):
        try:
            target_user_id = parse_optional_id(request.args['userId'], 'User ID', ('',))
        except ValueError as e:
            return validation_error_response({'userId': [str(e)]})

    users_query = User.query
    tasks_query = Task.query
    if not identity.is_admin:
        users_query = users_query.filter(User.id == identity.user_id)
        tasks_query = tasks_query.filter(or_(
            Task.created_by == identity.user_id, Task.assigned_to == identity.user_id
        ))
    if target_user_id is not None:
        users_query = users_query.filter(User.id == target_user_id)
        tasks_query = tasks_query.filter(or_(
            Task.created_by == target_user_id, Task.assigned_to == target_user_id
        ))

    users = users_query.order_by(User.name.asc()).all()

    if stats_only:
        basic_users = [{
            'id': user.id,
            'name': user.display_name,
            'email': user.email,
            'role': user.role,
            'created_at': user.created_at.isoformat() if user.created_at else None
        } for user in users]
        return success_response('Team stats retrieved successfully', {
            'users': basic_users,
            'count': len(basic_users)
        })

    tasks = tasks_query.order_by(Task.created_at.desc()).all()
    now = datetime.utcnow()

    members = [member_stats(user, tasks, now) for user in users]
    members.sort(key=lambda member: member['taskCount'], reverse=True)

    response_data = {
        'teamStats': team_stats(members, tasks, now),
        'members': members,
        'memberCount': len(members),
        'summaryByRole': summary_by_role(members)
    }

    if include_tasks:
        response_data['tasks'] = [task.to_dict() for task in tasks]
        response_data['taskCount'] = len(tasks)

    return success_response('Team analytics retrieved successfully', response_data)
