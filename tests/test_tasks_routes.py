from datetime import datetime, date, timedelta

from models import db, Task, Notification
from tasks import generate_module_name, parse_optional_id, resolve_assignee
from tokens import Identity, Role

import pytest


# ============================================
# 輔助函數
# ============================================

def test_generate_module_name():
    assert generate_module_name('Jane Doe', now=datetime(2024, 10, 16)) == 'October-Week3-jane_doe-project'
    # 2024-09-01 是週日
    assert generate_module_name('bob', now=datetime(2024, 9, 1)) == 'September-Week1-bob-project'
    assert generate_module_name('bob', now=datetime(2024, 9, 2)) == 'September-Week2-bob-project'


@pytest.mark.parametrize('value, expected', [(None, None), ('', None), ('none', None), (4, 4), (' 12 ', 12)])
def test_parse_optional_id(value, expected):
    assert parse_optional_id(value, 'Project ID', (None, '', 'none')) == expected


@pytest.mark.parametrize('value', ['abc', True, 1.5, 0, -4, 2**31, '99999999999999999999', '1_0'])
def test_parse_optional_id_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        parse_optional_id(value, 'Project ID', (None, ''))


def test_resolve_assignee():
    user = Identity(5, 'jane@example.com', Role.USER)
    admin = Identity(1, 'admin@example.com', Role.ADMIN)

    assert resolve_assignee(user, 'current') == 5
    assert resolve_assignee(user, 5) == 5
    assert resolve_assignee(user, 'unassigned') is None
    assert resolve_assignee(admin, '9') == 9
    with pytest.raises(ValueError):
        resolve_assignee(user, 9)


# ============================================
# 列表
# ============================================

def test_user_only_sees_own_and_assigned_tasks(client, user, other_user, make_task, auth_header):
    make_task(user, title='Mine')
    make_task(other_user, title='Assigned to me', assigned_to=user.id)
    make_task(other_user, title='Not mine')

    response = client.get('/api/tasks', headers=auth_header(user))

    assert response.status_code == 200
    titles = {task['title'] for task in response.get_json()['data']['tasks']}
    assert titles == {'Mine', 'Assigned to me'}


def test_admin_sees_all_tasks(client, user, other_user, admin, make_task, auth_header):
    make_task(user)
    make_task(other_user)

    data = client.get('/api/tasks', headers=auth_header(admin)).get_json()['data']

    assert len(data['tasks']) == 2
    assert data['pagination']['total'] == 2


def test_filtered_second_page(client, user, other_user, make_task, auth_header):
    for i in range(12):
        make_task(user, title=f'Todo {i}', status='todo')
    make_task(user, title='Finished', status='done')
    make_task(other_user, title='Hidden', status='todo')

    response = client.get('/api/tasks?page=2&limit=10&status=todo', headers=auth_header(user))

    data = response.get_json()['data']
    assert len(data['tasks']) == 2
    assert data['pagination'] == {'page': 2, 'limit': 10, 'total': 12, 'totalPages': 2}
    assert all(task['status'] == 'todo' for task in data['tasks'])


def test_list_rows_include_names_and_tags(client, user, make_project, make_task, auth_header):
    project = make_project(user, name='Website')
    make_task(user, title='Tagged', project_id=project.id, tags=['ui', 'bug'])

    task = client.get('/api/tasks', headers=auth_header(user)).get_json()['data']['tasks'][0]

    assert task['project_name'] == 'Website'
    assert task['creator_name'] == 'Jane Doe'
    assert task['tags'] == ['ui', 'bug']


def test_list_search(client, user, make_task, auth_header):
    make_task(user, title='Fix login bug')
    make_task(user, title='Write docs', description='login page docs')
    make_task(user, title='Other')

    data = client.get('/api/tasks?search=login', headers=auth_header(user)).get_json()['data']
    assert data['pagination']['total'] == 2


def test_list_rejects_invalid_status(client, user, auth_header):
    response = client.get('/api/tasks?status=bogus', headers=auth_header(user))

    assert response.status_code == 400
    assert 'status' in response.get_json()['error']


def test_list_rejects_non_numeric_page(client, user, auth_header):
    assert client.get('/api/tasks?page=abc', headers=auth_header(user)).status_code == 400


# ============================================
# 建立
# ============================================

def test_create_task_defaults(client, user, auth_header):
    response = client.post('/api/tasks', json={'title': '  New task  '}, headers=auth_header(user))

    assert response.status_code == 201
    task = response.get_json()['data']['task']
    assert task['title'] == 'New task'
    assert task['status'] == 'todo'
    assert task['priority'] == 'medium'
    assert task['created_by'] == user.id
    assert task['assigned_to'] is None


def test_create_task_with_details(client, user, make_project, auth_header):
    project = make_project(user)
    payload = {
        'title': 'Design',
        'project_id': str(project.id),
        'assigned_to': 'current',
        'due_date': '2030-01-15',
        'estimated_hours': 4.5,
        'priority': 'high',
        'tags': ['ui']
    }

    task = client.post('/api/tasks', json=payload, headers=auth_header(user)).get_json()['data']['task']

    assert task['project_id'] == project.id
    assert task['assigned_to'] == user.id
    assert task['due_date'] == '2030-01-15'
    assert task['estimated_hours'] == 4.5
    assert task['tags'] == ['ui']


@pytest.mark.parametrize('payload', [
    {'title': '   '},
    {'description': 'no title'},
    {'title': 'x', 'status': 'bogus'},
    {'title': 'x', 'due_date': '15/01/2030'},
    {'title': 'x', 'estimated_hours': -1},
    {'title': 'x', 'tags': 'ui'},
])
def test_create_task_validation(client, user, auth_header, payload):
    response = client.post('/api/tasks', json=payload, headers=auth_header(user))

    assert response.status_code == 400
    assert response.get_json()['message'] == 'Validation failed'


def test_create_task_with_missing_project(client, user, auth_header):
    response = client.post('/api/tasks', json={'title': 'x', 'project_id': 999}, headers=auth_header(user))

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Project does not exist'


def test_user_cannot_assign_to_others(client, user, other_user, auth_header):
    response = client.post(
        '/api/tasks', json={'title': 'x', 'assigned_to': other_user.id}, headers=auth_header(user)
    )

    assert response.status_code == 400
    assert Task.query.count() == 0


def test_admin_assignment_notifies_assignee(client, admin, user, auth_header):
    response = client.post(
        '/api/tasks', json={'title': 'Review PR', 'assigned_to': user.id}, headers=auth_header(admin)
    )

    assert response.status_code == 201
    notification = Notification.query.filter_by(user_id=user.id).one()
    assert notification.type == 'task'
    assert notification.message == 'Task: Review PR'
    assert notification.is_read is False


# ============================================
# 單一任務
# ============================================

def test_get_task_permissions(client, user, other_user, admin, make_task, auth_header):
    task = make_task(other_user, assigned_to=user.id)

    as_assignee = client.get(f'/api/tasks/{task.id}', headers=auth_header(user)).get_json()['data']['task']
    assert as_assignee['canEdit'] is True
    assert as_assignee['canDelete'] is False

    assert client.get(f'/api/tasks/{task.id}', headers=auth_header(admin)).status_code == 200


def test_get_task_of_someone_else(client, user, other_user, make_task, auth_header):
    task = make_task(other_user)

    response = client.get(f'/api/tasks/{task.id}', headers=auth_header(user))

    assert response.status_code == 403
    assert response.get_json()['message'] == 'Permission denied'


def test_get_missing_task(client, user, auth_header):
    assert client.get('/api/tasks/999', headers=auth_header(user)).status_code == 404


def test_update_task(client, user, make_task, auth_header):
    task = make_task(user)

    response = client.put(
        f'/api/tasks/{task.id}', json={'status': 'done', 'priority': 'low'}, headers=auth_header(user)
    )

    assert response.status_code == 200
    data = response.get_json()['data']['task']
    assert data['status'] == 'done'
    assert data['priority'] == 'low'


def test_update_blank_module_name_is_generated(client, user, make_task, auth_header):
    task = make_task(user)

    data = client.put(
        f'/api/tasks/{task.id}', json={'module_name': ''}, headers=auth_header(user)
    ).get_json()['data']['task']

    assert data['module_name'].endswith('-jane_doe-project')


def test_update_without_fields(client, user, make_task, auth_header):
    task = make_task(user)

    response = client.put(f'/api/tasks/{task.id}', json={'unknown': 1}, headers=auth_header(user))

    assert response.status_code == 400
    assert response.get_json()['message'] == 'No updates provided'


def test_update_by_outsider(client, user, other_user, make_task, auth_header):
    task = make_task(other_user)

    response = client.put(f'/api/tasks/{task.id}', json={'status': 'done'}, headers=auth_header(user))

    assert response.status_code == 403
    assert db.session.get(Task, task.id).status == 'todo'


def test_delete_task_rules(client, user, other_user, make_task, auth_header):
    task = make_task(other_user, assigned_to=user.id)

    assert client.delete(f'/api/tasks/{task.id}', headers=auth_header(user)).status_code == 403
    assert client.delete(f'/api/tasks/{task.id}', headers=auth_header(other_user)).status_code == 200
    assert db.session.get(Task, task.id) is None


# ============================================
# 統計
# ============================================

def test_task_counts(client, user, other_user, make_task, auth_header):
    today = datetime.utcnow().date()
    make_task(user, status='todo', due_date=today)
    make_task(user, status='in_progress', due_date=today - timedelta(days=2))
    make_task(user, status='done', due_date=today - timedelta(days=2))
    make_task(other_user, status='todo', due_date=today)

    data = client.get('/api/tasks/counts', headers=auth_header(user)).get_json()['data']

    assert data == {'pendingTasks': 2, 'overdueTasks': 1, 'todayTasks': 1}


def test_team_tasks_for_regular_user(client, user, other_user, make_task, auth_header):
    make_task(user, status='done')
    make_task(other_user)

    data = client.get('/api/tasks/team?includeTasks=true', headers=auth_header(user)).get_json()['data']

    assert data['memberCount'] == 1
    assert data['members'][0]['id'] == user.id
    assert data['members'][0]['completionRate'] == 100
    assert data['taskCount'] == 1


def test_team_tasks_stats_only_for_admin(client, user, other_user, admin, auth_header):
    data = client.get('/api/tasks/team?statsOnly=true', headers=auth_header(admin)).get_json()['data']
    assert data['count'] == 3

    data = client.get(
        f'/api/tasks/team?statsOnly=true&userId={user.id}', headers=auth_header(admin)
    ).get_json()['data']
    assert [u['id'] for u in data['users']] == [user.id]


def test_team_tasks_rejects_bad_user_id(client, admin, auth_header):
    assert client.get('/api/tasks/team?userId=abc', headers=auth_header(admin)).status_code == 400


def test_overdue_check_on_model():
    today = date(2024, 5, 10)
    assert Task(title='x', status='todo', due_date=date(2024, 5, 9)).is_overdue(today)
    assert not Task(title='x', status='done', due_date=date(2024, 5, 9)).is_overdue(today)
    assert not Task(title='x', status='todo').is_overdue(today)


# ============================================
# 超出範圍的數字
# ============================================

@pytest.mark.parametrize('query', [
    'page=99999999999999999999',
    'projectId=99999999999999999999',
    'assignedTo=2147483648',
    'page=1_0',
])
def test_list_rejects_out_of_range_numbers(client, user, auth_header, query):
    response = client.get(f'/api/tasks?{query}', headers=auth_header(user))

    assert response.status_code == 400
    assert response.get_json()['message'] == 'Validation failed'


@pytest.mark.parametrize('field', ['project_id', 'assigned_to'])
def test_create_task_rejects_huge_ids(client, admin, auth_header, field):
    response = client.post(
        '/api/tasks', json={'title': 'x', field: 99999999999999999999}, headers=auth_header(admin)
    )

    assert response.status_code == 400
    assert Task.query.count() == 0


def test_huge_task_id_in_path_is_not_found(client, user, auth_header):
    assert client.get('/api/tasks/99999999999999999999', headers=auth_header(user)).status_code == 404


def test_search_treats_wildcards_literally(client, user, make_task, auth_header):
    make_task(user, title='50% off banner')
    make_task(user, title='Plain task')

    headers = auth_header(user)
    percent = client.get('/api/tasks?search=%25', headers=headers).get_json()['data']
    underscore = client.get('/api/tasks?search=_', headers=headers).get_json()['data']

    assert [t['title'] for t in percent['tasks']] == ['50% off banner']
    assert underscore['pagination']['total'] == 0
