import os
from datetime import timedelta

from auth import create_access_token
from conftest import MAIL_SETTINGS, create_project, create_teacher, login, reply_message
from models import Department, User, db


def test_ping(client):
    assert client.get('/api/ping').get_json() == {'message': 'pong'}


# -- auth --------------------------------------------------------------------

def test_register_and_login(client):
    resp = client.post('/api/register', json={'username': 'alice', 'password': 'secret123'})
    assert resp.status_code == 201
    assert resp.get_json()['data']['username'] == 'alice'

    body = client.post('/api/login', json={'username': 'alice', 'password': 'secret123'}).get_json()
    assert body['success'] is True
    assert body['token']
    assert body['user']['username'] == 'alice'


def test_register_duplicate_username(client):
    client.post('/api/register', json={'username': 'alice', 'password': 'secret123'})
    resp = client.post('/api/register', json={'username': 'alice', 'password': 'other-pass'})
    assert resp.status_code == 400
    assert resp.get_json()['type'] == 'ValidationError'


def test_register_validates_input(client):
    resp = client.post('/api/register', json={'username': 'al', 'password': '123'})
    assert resp.status_code == 400
    assert 'password' in resp.get_json()['error']


def test_login_with_wrong_password(client):
    client.post('/api/register', json={'username': 'alice', 'password': 'secret123'})
    resp = client.post('/api/login', json={'username': 'alice', 'password': 'wrong-pass'})
    assert resp.status_code == 401
    assert resp.get_json()['type'] == 'AuthError'


def test_protected_routes_need_a_token(client):
    assert client.get('/api/projects').status_code == 401
    resp = client.get('/api/projects', headers={'Authorization': 'Bearer not-a-jwt'})
    assert resp.status_code == 401
    assert resp.get_json()['success'] is False


def test_expired_token_is_rejected(app, client):
    login(client)
    with app.app_context():
        token = create_access_token(1, expires_delta=timedelta(seconds=-5))
    resp = client.get('/api/projects', headers={'Authorization': f'Bearer {token}'})
    assert resp.status_code == 401


def test_unknown_route_returns_json(client):
    resp = client.get('/api/nowhere')
    assert resp.status_code == 404
    assert resp.get_json()['success'] is False


# -- teachers and departments ------------------------------------------------

def test_teacher_crud(client, headers):
    tid = create_teacher(client, headers, 'Zhang Wei', 'Zhang@Uni.test')

    teachers = client.get('/api/teachers', headers=headers).get_json()['data']
    assert teachers == [{
        'id': tid, 'name': 'Zhang Wei', 'email': 'zhang@uni.test',
        'department_id': None, 'department_name': 'unassigned', 'phone': '',
    }]

    resp = client.put(f'/api/teachers/{tid}', headers=headers,
                      json={'name': 'Zhang Wei', 'email': 'zw@uni.test', 'phone': '555'})
    assert resp.status_code == 200
    assert resp.get_json()['data']['email'] == 'zw@uni.test'

    assert client.delete(f'/api/teachers/{tid}', headers=headers).status_code == 200
    assert client.get('/api/teachers', headers=headers).get_json()['data'] == []
    assert client.delete(f'/api/teachers/{tid}', headers=headers).status_code == 404


def test_teacher_validation(client, headers):
    create_teacher(client, headers, 'Zhang Wei', 'zhang@uni.test')

    resp = client.post('/api/teachers', headers=headers, json={'name': 'Copy', 'email': 'zhang@uni.test'})
    assert resp.status_code == 400
    resp = client.post('/api/teachers', headers=headers, json={'name': 'Bad', 'email': 'not-an-address'})
    assert resp.status_code == 400
    resp = client.post('/api/teachers', headers=headers,
                       json={'name': 'Lost', 'email': 'lost@uni.test', 'department_id': 77})
    assert resp.status_code == 400


def test_teachers_filtered_by_department(app, client, headers):
    with app.app_context():
        cs = Department(name='Computer Science', code='CS')
        db.session.add(cs)
        db.session.commit()
        cs_id = cs.id
    create_teacher(client, headers, 'Zhang Wei', 'zhang@uni.test', cs_id)
    create_teacher(client, headers, 'Chen Jie', 'chen@uni.test')

    departments = client.get('/api/departments', headers=headers).get_json()['data']
    assert departments == [{'id': cs_id, 'name': 'Computer Science', 'code': 'CS'}]

    filtered = client.get('/api/teachers', query_string={'department': 'Computer Science'},
                          headers=headers).get_json()['data']
    assert [t['name'] for t in filtered] == ['Zhang Wei']


def test_deleting_teacher_removes_memberships(client, headers, teachers):
    resp = client.post('/api/projects', headers=headers, content_type='multipart/form-data', data={
        'name': 'Survey', 'code': 'S1', 'email_subject_template': 's', 'email_body_template': 'b',
        'teacher_ids': [str(t) for t in teachers],
    })
    pid = resp.get_json()['data']['id']
    client.post(f'/api/projects/{pid}/dispatch', headers=headers)

    client.delete(f'/api/teachers/{teachers[0]}', headers=headers)
    data = client.get(f'/api/projects/{pid}/tracking', headers=headers).get_json()['data']
    assert data['member_count'] == 2
    assert data['total_sent'] == 2



def test_deleting_teacher_removes_stored_attachments(app, client, headers, teachers, sender, receiver):
    pid = create_project(client, headers, teacher_ids=teachers[:1])
    client.post(f'/api/projects/{pid}/dispatch', headers=headers)
    receiver.messages = [reply_message(
        'zhang@uni.test', references=[sender.sent[0]['message_id']],
        attachments=[{'filename': 'form.xlsx', 'content_type': 'application/octet-stream', 'data': b'xlsx'}],
    )]
    client.post(f'/api/projects/{pid}/fetch-emails', headers=headers)
    assert len(os.listdir(app.config['REPLY_DIR'])) == 1

    resp = client.delete(f'/api/teachers/{teachers[0]}', headers=headers)
    assert resp.status_code == 200
    assert os.listdir(app.config['REPLY_DIR']) == []

# -- email configuration -----------------------------------------------------

def test_email_config_hides_passwords(client, headers):
    data = client.get('/api/user/email-config', headers=headers).get_json()['data']
    assert data['smtp_host'] == 'smtp.uni.test'
    assert data['has_config'] is True
    assert 'smtp_password' not in data
    assert 'imap_password' not in data


def test_email_config_blank_password_keeps_stored_one(app, client, headers):
    settings = dict(MAIL_SETTINGS, smtp_password='', imap_password=None, smtp_port=587)
    resp = client.put('/api/user/email-config', headers=headers, json=settings)
    assert resp.status_code == 200
    assert resp.get_json()['data']['smtp_port'] == 587

    with app.app_context():
        user = User.query.filter_by(username='admin').one()
        assert user.smtp_password == 'smtp-pass'
        assert user.imap_password == 'imap-pass'


def test_email_config_starts_empty(client, bare_headers):
    data = client.get('/api/user/email-config', headers=bare_headers).get_json()['data']
    assert data['has_config'] is False
    assert data['smtp_host'] == ''


def test_email_config_rejects_bad_port(client, headers):
    resp = client.put('/api/user/email-config', headers=headers, json=dict(MAIL_SETTINGS, smtp_port=70000))
    assert resp.status_code == 400
