from flask import Flask, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os

from config import get_config
from models import db
from extensions import bcrypt, cors, limiter
from credentials import CredentialVerifier
from tokens import TokenService
from access import AccessMediator
from responses import success_response, error_response

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 統一的 log format
    """
    if app.debug or app.testing:
        return

    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # blueprint 模組的 logger 也一起寫到檔案
    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')


# ============================================
# 錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        return error_response('Bad request', 'The request is malformed or invalid', 400)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', 'The requested resource does not exist', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response('Method not allowed', 'The HTTP method is not allowed for this endpoint', 405)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return error_response('Too many requests', 'Too many requests. Please try again later.', 429)

    @app.errorhandler(500)
    def internal_server_error(error):
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return error_response('Internal server error', 'Something went wrong', 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        處理所有未預期的錯誤

        這是最後的防線,細節只寫到 log
        """
        # 其他沒有專屬 handler 的 HTTP 錯誤 (415, 413 ...)
        if isinstance(error, HTTPException):
            return error_response(error.name, error.description, error.code)

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return error_response('Internal server error', 'Something went wrong', 500)


# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response


# ============================================
# 一般路由
# ============================================

def register_core_routes(app):

    @app.route('/health', methods=['GET'])
    def health_check():
        """
        健康檢查端點

        用於 load balancer 或監控系統檢查服務是否正常
        """
        try:
            db.session.execute(text('SELECT 1'))
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return error_response('Service unhealthy', 'Database connection failed', 503)

        return success_response('Service healthy', {
            'status': 'healthy',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat()
        })

    @app.route('/')
    def home():
        """API 首頁"""
        return success_response('Team Task Manager API', {
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': '/health',
                'auth': ['/api/auth/register', '/api/auth/login', '/api/auth/profile'],
                'tasks': ['/api/tasks', '/api/tasks/:id', '/api/tasks/counts', '/api/tasks/team'],
                'projects': ['/api/projects', '/api/projects/:id', '/api/projects/counts'],
                'timesheet': ['/api/timesheet', '/api/timesheet/:id/status', '/api/timesheet/pending-count'],
                'notifications': ['/api/notifications/counts', '/api/notifications/mark-read'],
                'team': ['/api/team/dashboard', '/api/team/activity-count']
            }
        })


# ============================================
# App Factory
# ============================================

def create_app(config_class=None):
    """建立 Flask app,config_class 沒給時依 FLASK_ENV 決定"""
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # 擴展初始化
    db.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    # 認證元件: secret 只在這裡從 config 讀一次,之後以參數注入
    token_service = TokenService(
        secret=app.config['JWT_SECRET'],
        ttl=app.config['JWT_EXPIRES'],
        algorithm=app.config['JWT_ALGORITHM']
    )
    app.extensions['token_service'] = token_service
    app.extensions['access_mediator'] = AccessMediator(token_service)
    app.extensions['credentials'] = CredentialVerifier(bcrypt, rounds=app.config['BCRYPT_LOG_ROUNDS'])

    setup_logging(app)

    # 註冊 Blueprints
    from auth import auth_bp
    from tasks import tasks_bp
    from projects import projects_bp
    from timesheet import timesheet_bp
    from notifications import notifications_bp
    from team import team_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(tasks_bp, url_prefix='/api/tasks')
    app.register_blueprint(projects_bp, url_prefix='/api/projects')
    app.register_blueprint(timesheet_bp, url_prefix='/api/timesheet')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')
    app.register_blueprint(team_bp, url_prefix='/api/team')

    register_error_handlers(app)
    register_request_hooks(app)
    register_core_routes(app)

    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server,用 gunicorn wsgi:app
    app = create_app()
    port = int(os.getenv('FLASK_PORT', 8888))

    app.run(
        debug=app.config['DEBUG'],
        port=port,
        host='0.0.0.0'
    )
