from flask import Blueprint, request, current_app
from marshmallow import Schema, fields, validate, EXCLUDE
import logging

from models import db, Task, Project, TimesheetEntry, TIMESHEET_STATUSES
from access import auth_required, current_identity, can_access_task
from auth import validate_request_data
from querying import build_timesheet_filter, fetch_page, MAX_INT_VALUE
from responses import success_response, error_response, validation_error_response, server_error_response

timesheet_bp = Blueprint('timesheet', __name__)
logger = logging.getLogger(__name__)

ID_RANGE = validate.Range(min=1, max=MAX_INT_VALUE, error=f'ID must be between 1 and {MAX_INT_VALUE}')

ENTRY_SELECT = """
    SELECT
        e.*,
        u.name AS user_name,
        t.title AS task_title,
        p.name AS project_name
"""

ENTRY_FROM = """
    FROM timesheet_entries e
    LEFT JOIN users u ON e.user_id = u.id
    LEFT JOIN tasks t ON e.task_id = t.id
    LEFT JOIN projects p ON e.project_id = p.id
"""


# ============================================
# Input Validation Schemas
# ============================================

class CreateEntrySchema(Schema):
    """工時紀錄驗證"""

    class Meta:
        unknown = EXCLUDE

    date = fields.Date(required=True, error_messages={
        'required': 'Date is required',
        'invalid': 'Date must be in YYYY-MM-DD format'
    })
    hours = fields.Decimal(
        required=True,
        places=2,
        validate=validate.Range(min=0, max=24, min_inclusive=False, error='Hours must be between 0 and 24'),
        error_messages={'required': 'Hours is required', 'invalid': 'Hours must be a number'}
    )
    task_id = fields.Int(allow_none=True, validate=ID_RANGE, error_messages={'invalid': 'Task ID must be a number'})
    project_id = fields.Int(allow_none=True, validate=ID_RANGE, error_messages={'invalid': 'Project ID must be a number'})
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))


class ReviewEntrySchema(Schema):
    status = fields.Str(
        required=True,
        validate=validate.OneOf(
            [s for s in TIMESHEET_STATUSES if s != 'pending'],
            error='Status must be one of: approved, rejected'
        )
    )


# ============================================
# 查詢工時紀錄
# ============================================

@timesheet_bp.route('', methods=['GET'])
@auth_required
def get_entries():
    """
    查詢工時紀錄

    一般使用者只看得到自己的紀錄,admin 可以用 userId 查特定成員
    """
    identity = current_identity()

    is_valid, query_filter = build_timesheet_filter(
        request.args,
        identity,
        default_limit=current_app.config['DEFAULT_TIMESHEET_PAGE_SIZE'],
        max_limit=current_app.config['MAX_PAGE_SIZE']
    )
    if not is_valid:
        return validation_error_response(query_filter)

    rows, pagination = fetch_page(ENTRY_SELECT, ENTRY_FROM, query_filter, 'e.date DESC, e.id DESC')

    total_hours = round(sum(row['hours'] or 0 for row in rows), 2)

    return success_response('Timesheet entries retrieved successfully', {
        'entries': rows,
        'totalHours': total_hours,
        'pagination': pagination
    })


# ============================================
# 登記工時
# ============================================

@timesheet_bp.route('', methods=['POST'])
@auth_required
def create_entry():
    """
    登記工時

    記在任務上時需要有該任務的權限,沒帶 project_id 時沿用任務的專案
    """
    identity = current_identity()

    data = request.get_json(silent=True)
    if not data:
        return error_response('Validation failed', 'Request body must be JSON', 400)

    is_valid, result = validate_request_data(CreateEntrySchema, data)
    if not is_valid:
        return validation_error_response(result)

    project_id = result.get('project_id')

    if result.get('task_id') is not None:
        task = db.session.get(Task, result['task_id'])
        if task is None:
            return error_response('Task not found', 'No task with that ID', 404)
        if not can_access_task(task, identity):
            return error_response('Permission denied', 'You cannot log time on this task', 403)
        if project_id is None:
            project_id = task.project_id

    if project_id is not None and db.session.get(Project, project_id) is None:
        return error_response('Project not found', 'No project with that ID', 404)

    entry = TimesheetEntry(
        user_id=identity.user_id,
        task_id=result.get('task_id'),
        project_id=project_id,
        date=result['date'],
        hours=result['hours'],
        description=result.get('description'),
        status='pending'
    )

    try:
        db.session.add(entry)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Timesheet entry creation error')

    logger.info(f"Timesheet entry {entry.id} logged by user {identity.email}: {entry.hours}h")

    return success_response('Time logged successfully', {'entry': entry.to_dict()}, 201)


# ============================================
# 審核工時 (admin)
# ============================================

@timesheet_bp.route(f'/<int(max={MAX_INT_VALUE}):entry_id>/status', methods=['PATCH'])
@auth_required
def review_entry(entry_id):
    identity = current_identity()

    if not identity.is_admin:
        return error_response('Permission denied', 'Only admins can review timesheet entries', 403)

    entry = db.session.get(TimesheetEntry, entry_id)
    if entry is None:
        return error_response('Entry not found', 'No timesheet entry with that ID', 404)

    is_valid, result = validate_request_data(ReviewEntrySchema, request.get_json(silent=True) or {})
    if not is_valid:
        return validation_error_response(result)

    entry.status = result['status']

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Timesheet review error')

    logger.info(f"Timesheet entry {entry_id} {entry.status} by admin {identity.email}")

    return success_response('Timesheet entry updated successfully', {'entry': entry.to_dict()})


@timesheet_bp.route('/pending-count', methods=['GET'])
@auth_required
def get_pending_count():
    """自己還沒審核的工時紀錄數量"""
    identity = current_identity()
    pending = TimesheetEntry.query.filter_by(user_id=identity.user_id, status='pending').count()
    return success_response('Timesheet pending count retrieved', {'pendingEntries': pending})
