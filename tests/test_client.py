import json

import httpx
import pytest

from client import MailTrackerClient
from errors import AuthError, ConfigurationError, NotReadyError, TransportError, ValidationError


def make_client(handler):
    return MailTrackerClient('http://tracker.test/', transport=httpx.MockTransport(handler))


def test_login_returns_token():
    def handler(request):
        assert request.url.path == '/api/login'
        return httpx.Response(200, json={'success': True, 'token': 'tok', 'user': {'id': 1}})

    with make_client(handler) as api:
        assert api.login('admin', 'secret123') == 'tok'


def test_token_is_sent_as_bearer():
    seen = {}

    def handler(request):
        seen['auth'] = request.headers['Authorization']
        return httpx.Response(200, json={'success': True, 'data': {'total_sent': 3}})

    with make_client(handler) as api:
        assert api.tracking('tok', 7) == {'total_sent': 3}
    assert seen['auth'] == 'Bearer tok'


def test_error_type_in_body_wins():
    def handler(request):
        return httpx.Response(409, json={'success': False, 'type': 'ConfigurationError',
                                         'error': 'Email configuration incomplete'})

    with make_client(handler) as api:
        with pytest.raises(ConfigurationError, match='incomplete'):
            api.dispatch('tok', 1)


@pytest.mark.parametrize('status, error', [(400, ValidationError), (401, AuthError), (502, TransportError)])
def test_error_falls_back_to_status(status, error):
    with make_client(lambda request: httpx.Response(status, text='boom')) as api:
        with pytest.raises(error):
            api.list_projects('tok')


def test_unreachable_server():
    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    with make_client(handler) as api:
        with pytest.raises(TransportError):
            api.list_teachers('tok')


def test_create_project_uploads_template(tmp_path):
    template = tmp_path / 'form.xlsx'
    template.write_bytes(b'xlsx')
    seen = {}

    def handler(request):
        seen['body'] = request.read()
        seen['type'] = request.headers['Content-Type']
        return httpx.Response(201, json={'success': True, 'data': {'id': 5}, 'added_count': 2})

    with make_client(handler) as api:
        pid = api.create_project('tok', 'Survey', 'S1', 'subject', 'body',
                                 excel_template=str(template), teacher_ids=[1, 2])
    assert pid == 5
    assert seen['type'].startswith('multipart/form-data')
    assert b'filename="form.xlsx"' in seen['body']
    assert seen['body'].count(b'name="teacher_ids"') == 2


def test_remind_sends_target_ids():
    seen = {}

    def handler(request):
        seen['json'] = request.read()
        return httpx.Response(200, json={'success': True, 'count': 1, 'failed': []})

    with make_client(handler) as api:
        assert api.remind('tok', 3, target_ids=[4]) == 1
    assert json.loads(seen['json']) == {'target_ids': [4]}


def test_wait_for_aggregate_polls_until_done():
    states = iter(['running', 'running', 'done'])
    sleeps = []

    def handler(request):
        assert request.url.path == '/api/projects/9/aggregate-status'
        return httpx.Response(200, json={'success': True, 'job': {'status': next(states), 'job_id': 1}})

    with make_client(handler) as api:
        job = api.wait_for_aggregate('tok', 9, interval=0.5, sleep=sleeps.append)
    assert job['status'] == 'done'
    assert sleeps == [0.5, 0.5]


def test_wait_for_aggregate_failed_job():
    def handler(request):
        return httpx.Response(200, json={'success': True, 'job': {'status': 'failed', 'error': 'disk full'}})

    with make_client(handler) as api:
        with pytest.raises(NotReadyError, match='disk full'):
            api.wait_for_aggregate('tok', 9, sleep=lambda s: None)


def test_wait_for_aggregate_times_out():
    def handler(request):
        return httpx.Response(200, json={'success': True, 'job': {'status': 'running'}})

    with make_client(handler) as api:
        with pytest.raises(NotReadyError):
            api.wait_for_aggregate('tok', 9, interval=1.0, timeout=3.0, sleep=lambda s: None)


def test_download_writes_file(tmp_path):
    def handler(request):
        return httpx.Response(200, content=b'PK-bytes')

    dest = tmp_path / 'out.xlsx'
    with make_client(handler) as api:
        api.download('tok', 9, str(dest))
    assert dest.read_bytes() == b'PK-bytes'


def test_client_against_real_app(app):
    """The client speaks the same protocol as the Flask app"""

    def handler(request):
        resp = app.test_client().open(
            request.url.path, method=request.method,
            headers={k: v for k, v in request.headers.items() if k.lower() != 'host'},
            data=request.read(), query_string=request.url.query.decode())
        return httpx.Response(resp.status_code, content=resp.data, headers={'Content-Type': resp.content_type})

    with make_client(handler) as api:
        api.register('carol', 'secret123')
        token = api.login('carol', 'secret123')
        teacher = api.create_teacher(token, 'Li Na', 'li@uni.test')
        pid = api.create_project(token, 'Survey', 'S1', 'subject', 'body', teacher_ids=[teacher['id']])
        assert api.tracking(token, pid)['member_count'] == 1
        with pytest.raises(ConfigurationError):
            api.dispatch(token, pid)
        with pytest.raises(NotReadyError):
            api.download(token, pid, '/nonexistent/out.xlsx')
