from flask import Blueprint, request, current_app
from marshmallow import Schema, fields, validate, ValidationError, EXCLUDE
from datetime import datetime
import logging

from models import db, Project, PROJECT_STATUSES
from access import auth_required, current_identity, can_manage_project
from auth import validate_request_data
from querying import build_project_filter, fetch_page, MAX_INT_VALUE
from responses import success_response, error_response, validation_error_response, server_error_response

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

PROJECT_SELECT = "SELECT p.*, u.name AS user_name"
PROJECT_FROM = "FROM projects p LEFT JOIN users u ON p.user_id = u.id"


# ============================================
# Input Validation Schemas
# ============================================

def _not_blank(value):
    if not value.strip():
        raise ValidationError('Project name must not be blank')


class UpdateProjectSchema(Schema):
    """更新專案驗證"""

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(validate=[validate.Length(min=1, max=255), _not_blank])
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    status = fields.Str(validate=validate.OneOf(
        PROJECT_STATUSES, error=f"Status must be one of: {', '.join(PROJECT_STATUSES)}"
    ))


class CreateProjectSchema(UpdateProjectSchema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=[validate.Length(min=1, max=255), _not_blank],
        error_messages={'required': 'Project name is required'}
    )
    status = fields.Str(
        validate=validate.OneOf(PROJECT_STATUSES, error=f"Status must be one of: {', '.join(PROJECT_STATUSES)}"),
        load_default='active'
    )


# ============================================
# 輔助函數
# ============================================

def _load_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        return None, error_response('Project not found', 'No project with that ID', 404)
    return project, None


def _load_managed_project(project_id, identity):
    """取得專案並確認是 owner 或 admin"""
    project, error = _load_project(project_id)
    if error:
        return None, error

    if not can_manage_project(project, identity):
        logger.warning(f"User {identity.user_id} denied write access to project {project_id}")
        return None, error_response('Permission denied', 'You can only modify your own projects', 403)

    return project, None


# ============================================
# 查詢專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@auth_required
def get_projects():
    """
    查詢專案列表

    專案是團隊共用的,所有登入的使用者都看得到
    """
    identity = current_identity()

    is_valid, query_filter = build_project_filter(
        request.args,
        identity,
        default_limit=current_app.config['DEFAULT_PROJECT_PAGE_SIZE'],
        max_limit=current_app.config['MAX_PAGE_SIZE']
    )
    if not is_valid:
        return validation_error_response(query_filter)

    rows, pagination = fetch_page(PROJECT_SELECT, PROJECT_FROM, query_filter, 'p.created_at DESC, p.id DESC')

    return success_response('Projects retrieved successfully', {
        'projects': rows,
        'pagination': pagination
    })


# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@auth_required
def create_project():
    """建立新專案,建立者就是 owner"""
    identity = current_identity()

    data = request.get_json(silent=True)
    if not data:
        return error_response('Validation failed', 'Request body must be JSON', 400)

    is_valid, result = validate_request_data(CreateProjectSchema, data)
    if not is_valid:
        return validation_error_response(result)

    project = Project(
        name=result['name'].strip(),
        description=result.get('description'),
        status=result['status'],
        user_id=identity.user_id
    )

    try:
        db.session.add(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Project creation error')

    logger.info(f"Project created: {project.name} by user {identity.email}")

    return success_response('Project created successfully', {'project': project.to_dict()}, 201)


# ============================================
# 單一專案
# ============================================

@projects_bp.route(f'/<int(max={MAX_INT_VALUE}):project_id>', methods=['GET'])
@auth_required
def get_project(project_id):
    project, error = _load_project(project_id)
    if error:
        return error

    return success_response('Project retrieved successfully', {'project': project.to_dict()})


@projects_bp.route(f'/<int(max={MAX_INT_VALUE}):project_id>', methods=['PUT'])
@auth_required
def update_project(project_id):
    """更新專案 (owner 或 admin)"""
    identity = current_identity()

    project, error = _load_managed_project(project_id, identity)
    if error:
        return error

    data = request.get_json(silent=True)
    if not data:
        return error_response('No updates provided', 'Provide at least one field to update', 400)

    is_valid, result = validate_request_data(UpdateProjectSchema, data)
    if not is_valid:
        return validation_error_response(result)

    if not result:
        return error_response('No updates provided', 'Provide at least one field to update', 400)

    if 'name' in result:
        project.name = result['name'].strip()
    for field in ('description', 'status'):
        if field in result:
            setattr(project, field, result[field])
    project.updated_at = datetime.utcnow()

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Project update error')

    logger.info(f"Project {project_id} updated by user {identity.email}")

    return success_response('Project updated successfully', {'project': project.to_dict()})


@projects_bp.route(f'/<int(max={MAX_INT_VALUE}):project_id>', methods=['DELETE'])
@auth_required
def delete_project(project_id):
    """刪除專案 (cascade 會一併刪除專案底下的任務)"""
    identity = current_identity()

    project, error = _load_managed_project(project_id, identity)
    if error:
        return error

    try:
        db.session.delete(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        return server_error_response(e, 'Project deletion error')

    logger.info(f"Project deleted: {project_id} by user {identity.email}")

    return success_response('Project deleted successfully')


@projects_bp.route('/counts', methods=['GET'])
@auth_required
def get_project_counts():
    """進行中的專案數量"""
    active = Project.query.filter_by(status='active').count()
    return success_response('Project count retrieved', {'activeProjects': active})
