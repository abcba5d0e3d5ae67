from models import TimesheetEntry


def _log(client, headers, **overrides):
    payload = {'date': '2024-03-04', 'hours': 2.5, 'description': 'Pairing'}
    payload.update(overrides)
    return client.post('/api/timesheet', json=payload, headers=headers)


def test_log_time(client, user, auth_header):
    response = _log(client, auth_header(user))

    assert response.status_code == 201
    entry = response.get_json()['data']['entry']
    assert entry['hours'] == 2.5
    assert entry['status'] == 'pending'
    assert entry['user_id'] == user.id


def test_log_time_on_task_inherits_project(client, user, make_project, make_task, auth_header):
    project = make_project(user)
    task = make_task(user, project_id=project.id)

    entry = _log(client, auth_header(user), task_id=task.id).get_json()['data']['entry']

    assert entry['task_id'] == task.id
    assert entry['project_id'] == project.id


def test_log_time_on_foreign_task(client, user, other_user, make_task, auth_header):
    task = make_task(other_user)

    response = _log(client, auth_header(user), task_id=task.id)

    assert response.status_code == 403
    assert TimesheetEntry.query.count() == 0


def test_log_time_on_missing_references(client, user, auth_header):
    headers = auth_header(user)
    assert _log(client, headers, task_id=999).status_code == 404
    assert _log(client, headers, project_id=999).status_code == 404


def test_log_time_validation(client, user, auth_header):
    headers = auth_header(user)

    for hours in (0, 25, 'many'):
        assert _log(client, headers, hours=hours).status_code == 400
    assert _log(client, headers, date='yesterday').status_code == 400


def test_entries_are_private_to_user(client, user, other_user, admin, auth_header):
    _log(client, auth_header(user), hours=2)
    _log(client, auth_header(user), hours=1.5)
    _log(client, auth_header(other_user), hours=8)

    mine = client.get('/api/timesheet', headers=auth_header(user)).get_json()['data']
    assert mine['pagination']['total'] == 2
    assert mine['totalHours'] == 3.5

    # userId 只有 admin 有效
    snooping = client.get(f'/api/timesheet?userId={other_user.id}', headers=auth_header(user)).get_json()['data']
    assert snooping['pagination']['total'] == 2

    everyone = client.get('/api/timesheet', headers=auth_header(admin)).get_json()['data']
    assert everyone['pagination']['total'] == 3

    bob = client.get(f'/api/timesheet?userId={other_user.id}', headers=auth_header(admin)).get_json()['data']
    assert [e['user_name'] for e in bob['entries']] == ['Bob Smith']


def test_entries_date_range(client, user, auth_header):
    headers = auth_header(user)
    _log(client, headers, date='2024-03-01')
    _log(client, headers, date='2024-03-15')
    _log(client, headers, date='2024-04-01')

    data = client.get('/api/timesheet?from=2024-03-01&to=2024-03-31', headers=headers).get_json()['data']

    assert [e['date'] for e in data['entries']] == ['2024-03-15', '2024-03-01']


def test_review_entry(client, user, admin, auth_header):
    entry_id = _log(client, auth_header(user)).get_json()['data']['entry']['id']

    denied = client.patch(f'/api/timesheet/{entry_id}/status', json={'status': 'approved'},
                          headers=auth_header(user))
    assert denied.status_code == 403

    invalid = client.patch(f'/api/timesheet/{entry_id}/status', json={'status': 'pending'},
                           headers=auth_header(admin))
    assert invalid.status_code == 400

    approved = client.patch(f'/api/timesheet/{entry_id}/status', json={'status': 'approved'},
                            headers=auth_header(admin))
    assert approved.get_json()['data']['entry']['status'] == 'approved'

    missing = client.patch('/api/timesheet/999/status', json={'status': 'approved'}, headers=auth_header(admin))
    assert missing.status_code == 404


def test_pending_count(client, user, auth_header):
    headers = auth_header(user)
    _log(client, headers)
    _log(client, headers)

    data = client.get('/api/timesheet/pending-count', headers=headers).get_json()['data']
    assert data == {'pendingEntries': 2}


def test_log_time_rejects_huge_ids(client, user, auth_header):
    headers = auth_header(user)

    assert _log(client, headers, task_id=99999999999999999999).status_code == 400
    assert _log(client, headers, project_id=2**31).status_code == 400
    assert client.get('/api/timesheet?taskId=99999999999999999999', headers=headers).status_code == 400
    assert TimesheetEntry.query.count() == 0
