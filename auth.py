from flask import Blueprint, request, current_app
from marshmallow import Schema, fields, validate, ValidationError, EXCLUDE
from sqlalchemy.exc import IntegrityError
from datetime import datetime
from models import db, User
from credentials import get_credentials
from tokens import Identity, Role
from access import auth_required, current_identity
from extensions import limiter
from responses import success_response, error_response, validation_error_response, server_error_response
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""

    class Meta:
        unknown = EXCLUDE  # role 之類的欄位直接忽略

    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100, error='Name must be 1-100 characters'),
        error_messages={'required': 'Name is required'}
    )
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        error_messages={'required': 'Password is required'}
    )


class LoginSchema(Schema):
    """登入輸入驗證"""

    class Meta:
        unknown = EXCLUDE

    email = fields.Email(required=True, error_messages={'required': 'Email is required'})
    password = fields.Str(required=True, error_messages={'required': 'Password is required'})


# ============================================
# Helper Functions
# ============================================

def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages


def get_token_service():
    return current_app.extensions['token_service']


def issue_token(user):
    identity = Identity(user_id=user.id, email=user.email, role=Role(user.role))
    return get_token_service().issue(identity)


def public_user(user):
    """回傳給前端的使用者資料 (不含 password_hash)"""
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'role': user.role
    }


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit("5 per hour")
def register():
    """
    使用者註冊

    role 一律是 user,不接受前端指定 (避免自己升級成 admin)
    """
    data = request.get_json(silent=True)
    if not data:
        return error_response('Validation failed', 'Request body must be JSON', 400)

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return validation_error_response(result)

    min_length = current_app.config['PASSWORD_MIN_LENGTH']
    if len(result['password']) < min_length:
        return validation_error_response({
            'password': [f'Password must be at least {min_length} characters']
        })

    email = result['email'].lower()
    if User.query.filter_by(email=email).first():
        return error_response('Registration failed', 'User already exists with this email', 409)

    user = User(
        name=result['name'].strip(),
        email=email,
        password_hash=get_credentials().hash(result['password']),
        role=Role.USER.value
    )

    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        # 同時註冊同一個 email,unique constraint 擋下來
        db.session.rollback()
        return error_response('Registration failed', 'User already exists with this email', 409)
    except Exception as e:
        db.session.rollback()
        # 不要把 exception 細節洩漏給前端
        return server_error_response(e, f"Registration error for {email}")

    logger.info(f"New user registered: {user.email}")

    return success_response('User registered successfully', {
        'user': public_user(user),
        'token': issue_token(user)
    }, 201)


# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """
    使用者登入

    不區分 email/password 錯誤,避免帳號枚舉攻擊
    """
    data = request.get_json(silent=True)
    if not data:
        return error_response('Validation failed', 'Request body must be JSON', 400)

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return validation_error_response(result)

    user = User.query.filter_by(email=result['email'].lower()).first()

    if not user or not get_credentials().verify(result['password'], user.password_hash):
        logger.warning(f"Failed login attempt for email: {result['email']} from {request.remote_addr}")
        return error_response('Login failed', 'Invalid email or password', 401)

    # 更新最後登入時間
    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 這個錯誤不影響登入,只記錄就好
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return success_response('Login successful', {
        'user': public_user(user),
        'token': issue_token(user)
    })


# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/profile', methods=['GET'])
@auth_required
def get_profile():
    """取得當前登入使用者的資訊"""
    identity = current_identity()
    user = db.session.get(User, identity.user_id)

    if not user:
        logger.warning(f"Token valid but user not found: {identity.user_id}")
        return error_response('User not found', 'User does not exist', 404)

    return success_response('Profile retrieved successfully', {'user': user.to_dict()})
