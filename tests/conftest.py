import pytest

from app import create_app
from config import TestingConfig
from models import db, User, Project, Task
from tokens import Identity, Role


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(name='Jane Doe', email='jane@example.com', password='secret123', role='user'):
        user = User(
            name=name,
            email=email,
            password_hash=app.extensions['credentials'].hash(password),
            role=role
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def other_user(make_user):
    return make_user(name='Bob Smith', email='bob@example.com')


@pytest.fixture
def admin(make_user):
    return make_user(name='Admin', email='admin@example.com', role='admin')


@pytest.fixture
def auth_header(app):
    """產生帶 Bearer token 的 header"""
    def _auth_header(user):
        identity = Identity(user_id=user.id, email=user.email, role=Role(user.role))
        token = app.extensions['token_service'].issue(identity)
        return {'Authorization': f'Bearer {token}'}
    return _auth_header


@pytest.fixture
def make_project():
    def _make_project(owner, name='Website', **kwargs):
        project = Project(name=name, user_id=owner.id, **kwargs)
        db.session.add(project)
        db.session.commit()
        return project
    return _make_project


@pytest.fixture
def make_task():
    def _make_task(creator, title='Task', **kwargs):
        task = Task(title=title, created_by=creator.id, **kwargs)
        db.session.add(task)
        db.session.commit()
        return task
    return _make_task
