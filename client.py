"""HTTP client for the mail tracker API.

Every authenticated call takes the bearer token explicitly; the client keeps
no session state of its own.
"""
import os
import time
from typing import Any, Dict, List, Optional

import httpx

from errors import ERROR_TYPES, AuthError, ServiceError, NotReadyError, TransportError, ValidationError

STATUS_ERRORS = {
    400: ValidationError,
    401: AuthError,
    502: TransportError,
}


class MailTrackerClient:
    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self._client = httpx.Client(base_url=base_url.rstrip('/') + '/api', timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── plumbing ────────────────────────────────────────────────────────
    def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> httpx.Response:
        headers = kwargs.pop('headers', {})
        if token is not None:
            headers['Authorization'] = f'Bearer {token}'
        try:
            resp = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f'API unreachable: {exc}') from exc
        if resp.status_code >= 400:
            raise self._error_from(resp)
        return resp

    @staticmethod
    def _error_from(resp: httpx.Response) -> ServiceError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get('error') or resp.text or f'HTTP {resp.status_code}'
        cls = ERROR_TYPES.get(body.get('type')) or STATUS_ERRORS.get(resp.status_code, ServiceError)
        return cls(message)

    def _json(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        return self._request(method, path, token, **kwargs).json()

    # ── auth ────────────────────────────────────────────────────────────
    def register(self, username: str, password: str) -> Dict[str, Any]:
        return self._json('POST', '/register', json={'username': username, 'password': password})['data']

    def login(self, username: str, password: str) -> str:
        return self._json('POST', '/login', json={'username': username, 'password': password})['token']

    # ── directory ───────────────────────────────────────────────────────
    def list_departments(self, token: str) -> List[Dict[str, Any]]:
        return self._json('GET', '/departments', token)['data']

    def list_teachers(self, token: str, department: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'department': department} if department else None
        return self._json('GET', '/teachers', token, params=params)['data']

    def create_teacher(self, token: str, name: str, email: str,
                       department_id: Optional[int] = None, phone: Optional[str] = None) -> Dict[str, Any]:
        payload = {'name': name, 'email': email, 'department_id': department_id, 'phone': phone}
        return self._json('POST', '/teachers', token, json=payload)['data']

    def update_teacher(self, token: str, teacher_id: int, **fields) -> Dict[str, Any]:
        return self._json('PUT', f'/teachers/{teacher_id}', token, json=fields)['data']

    def delete_teacher(self, token: str, teacher_id: int) -> None:
        self._request('DELETE', f'/teachers/{teacher_id}', token)

    # ── projects ────────────────────────────────────────────────────────
    def list_projects(self, token: str) -> List[Dict[str, Any]]:
        return self._json('GET', '/projects', token)['data']

    def get_project(self, token: str, project_id: int) -> Dict[str, Any]:
        return self._json('GET', f'/projects/{project_id}', token)['data']

    def create_project(self, token: str, name: str, code: str, subject_template: str, body_template: str,
                       excel_template: Optional[str] = None, teacher_ids: Optional[List[int]] = None) -> int:
        data = {
            'name': name,
            'code': code,
            'email_subject_template': subject_template,
            'email_body_template': body_template,
        }
        if teacher_ids:
            data['teacher_ids'] = [str(tid) for tid in teacher_ids]
        if excel_template:
            with open(excel_template, 'rb') as fh:
                files = {'excel_template': (os.path.basename(excel_template), fh.read())}
            body = self._json('POST', '/projects', token, data=data, files=files)
        else:
            body = self._json('POST', '/projects', token, data=data)
        return body['data']['id']

    def add_members(self, token: str, project_id: int, teacher_ids: List[int]) -> int:
        body = self._json('POST', f'/projects/{project_id}/members', token, json={'teacher_ids': teacher_ids})
        return body['added_count']

    def dispatch(self, token: str, project_id: int) -> Dict[str, Any]:
        return self._json('POST', f'/projects/{project_id}/dispatch', token)

    def fetch_emails(self, token: str, project_id: int) -> List[Dict[str, Any]]:
        return self._json('POST', f'/projects/{project_id}/fetch-emails', token)['new_replies']

    def tracking(self, token: str, project_id: int) -> Dict[str, Any]:
        return self._json('GET', f'/projects/{project_id}/tracking', token)['data']

    def remind(self, token: str, project_id: int, target_ids: Optional[List[int]] = None) -> int:
        payload = {'target_ids': target_ids} if target_ids is not None else {}
        return self._json('POST', f'/projects/{project_id}/remind', token, json=payload)['count']

    def aggregate(self, token: str, project_id: int) -> Dict[str, Any]:
        return self._json('POST', f'/projects/{project_id}/aggregate', token)['job']

    def aggregate_status(self, token: str, project_id: int) -> Dict[str, Any]:
        return self._json('GET', f'/projects/{project_id}/aggregate-status', token)['job']

    def wait_for_aggregate(self, token: str, project_id: int, interval: float = 2.0,
                           timeout: float = 300.0, sleep=time.sleep) -> Dict[str, Any]:
        """Poll the job status until done; NotReadyError on failure or timeout"""
        waited = 0.0
        while True:
            job = self.aggregate_status(token, project_id)
            if job['status'] == 'done':
                return job
            if job['status'] == 'failed':
                raise NotReadyError(f"Aggregation failed: {job.get('error')}")
            if job['status'] == 'none':
                raise NotReadyError('No aggregation has been started for this project')
            if waited >= timeout:
                raise NotReadyError(f'Aggregation still running after {timeout:.0f}s')
            sleep(interval)
            waited += interval

    def download(self, token: str, project_id: int, dest_path: str) -> str:
        resp = self._request('GET', f'/projects/{project_id}/download', token)
        with open(dest_path, 'wb') as fh:
            fh.write(resp.content)
        return dest_path

    # ── user settings ───────────────────────────────────────────────────
    def get_email_config(self, token: str) -> Dict[str, Any]:
        return self._json('GET', '/user/email-config', token)['data']

    def update_email_config(self, token: str, **settings) -> Dict[str, Any]:
        return self._json('PUT', '/user/email-config', token, json=settings)['data']
