from __future__ import annotations

from ipaddress import ip_address
import logging
import os
from typing import Literal

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from awe_supervisor import __version__
from awe_supervisor.config import load_settings
from awe_supervisor.service import (
    CreateTaskInput,
    InputValidationError,
    SupervisorService,
    TaskView,
    build_service,
)

_log = logging.getLogger(__name__)


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default='', max_length=20000)
    leader_id: str = Field(min_length=1, max_length=128)
    collaborators: list[str] = Field(default_factory=list)
    execution_mode: Literal['solo', 'team'] | None = Field(default=None)
    auto_start: bool = Field(default=False)


class StartTaskRequest(BaseModel):
    background: bool = Field(default=False)


class MessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=8000)


class PauseTaskRequest(BaseModel):
    message: str | None = Field(default=None, max_length=4000)


class TaskResponse(BaseModel):
    task_id: str
    title: str
    description: str
    leader_id: str
    collaborators: list[str]
    execution_mode: str
    repo_url: str | None
    status: str
    last_reason: str | None
    created_at: str | None
    updated_at: str | None
    progress_status: str | None
    percent_complete: int | None
    question: str | None


class ProgressResponse(BaseModel):
    task_id: str
    exists: bool
    progress: dict | None


class MessageResponse(BaseModel):
    task_id: str
    pending: int


class PauseResponse(BaseModel):
    task_id: str
    requested_at: str | None


class EventResponse(BaseModel):
    ts: str
    task_id: str
    type: str
    payload: dict


class AppState:
    def __init__(self, service: SupervisorService):
        self.service = service


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        title=task.title,
        description=task.description,
        leader_id=task.leader_id,
        collaborators=list(task.collaborators),
        execution_mode=task.execution_mode,
        repo_url=task.repo_url,
        status=task.status,
        last_reason=task.last_reason,
        created_at=task.created_at,
        updated_at=task.updated_at,
        progress_status=task.progress_status,
        percent_complete=task.percent_complete,
        question=task.question,
    )


def create_app(
    *,
    service: SupervisorService | None = None,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-awe-api-token',
) -> FastAPI:
    if service is None:
        service = build_service(load_settings())

    app = FastAPI(title='awe-supervisor api', version=__version__)
    app.state.container = AppState(service=service)

    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('AWE_API_ALLOW_REMOTE', '')).strip().lower() in {'1', 'true', 'yes', 'on'}
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('AWE_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(
        os.getenv('AWE_API_TOKEN_HEADER', api_access_token_header) or api_access_token_header
    ).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    def get_service() -> SupervisorService:
        return app.state.container.service

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    def _start_task_worker(task_id: str) -> None:
        service = get_service()
        try:
            service.start_task(task_id)
        except Exception as exc:
            reason_text = str(exc).strip() or exc.__class__.__name__
            _log.exception('background worker failed task_id=%s reason=%s', task_id, reason_text)
            try:
                service.mark_failed(task_id, reason=f'Supervisor crashed: {reason_text}')
            except Exception:
                _log.exception('background worker failed to mark task as failed task_id=%s', task_id)

    def _not_found(exc: KeyError) -> HTTPException:
        return HTTPException(status_code=404, detail='task not found')

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        background_tasks: BackgroundTasks,
        service: SupervisorService = Depends(get_service),
    ) -> TaskResponse:
        task = service.create_task(
            CreateTaskInput(
                title=payload.title,
                description=payload.description,
                leader_id=payload.leader_id,
                collaborators=payload.collaborators,
                execution_mode=payload.execution_mode,
            )
        )
        if payload.auto_start:
            background_tasks.add_task(_start_task_worker, task.task_id)
        return _to_task_response(task)

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: SupervisorService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[TaskResponse]:
        return [_to_task_response(task) for task in service.list_tasks(limit=limit)]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: SupervisorService = Depends(get_service)) -> TaskResponse:
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(task)

    @app.post('/api/tasks/{task_id}/start', response_model=TaskResponse)
    def start_task(
        task_id: str,
        background_tasks: BackgroundTasks,
        payload: StartTaskRequest | None = None,
        service: SupervisorService = Depends(get_service),
    ) -> TaskResponse:
        request = payload or StartTaskRequest()
        if request.background:
            task = service.get_task(task_id)
            if task is None:
                raise HTTPException(status_code=404, detail='task not found')
            background_tasks.add_task(_start_task_worker, task_id)
            return _to_task_response(task)
        try:
            return _to_task_response(service.start_task(task_id))
        except KeyError as exc:
            raise _not_found(exc) from exc

    @app.get('/api/tasks/{task_id}/progress', response_model=ProgressResponse)
    def get_progress(task_id: str, service: SupervisorService = Depends(get_service)) -> ProgressResponse:
        try:
            record = service.get_progress(task_id)
        except KeyError as exc:
            raise _not_found(exc) from exc
        return ProgressResponse(
            task_id=task_id,
            exists=record is not None,
            progress=(record.to_dict() if record is not None else None),
        )

    @app.post('/api/tasks/{task_id}/messages', response_model=MessageResponse)
    def post_message(
        task_id: str,
        payload: MessageRequest,
        service: SupervisorService = Depends(get_service),
    ) -> MessageResponse:
        try:
            pending = service.post_message(task_id, payload.message)
        except KeyError as exc:
            raise _not_found(exc) from exc
        return MessageResponse(task_id=task_id, pending=pending)

    @app.post('/api/tasks/{task_id}/pause', response_model=PauseResponse)
    def pause_task(
        task_id: str,
        payload: PauseTaskRequest | None = None,
        service: SupervisorService = Depends(get_service),
    ) -> PauseResponse:
        try:
            requested_at = service.request_pause(task_id, (payload.message if payload else None))
        except KeyError as exc:
            raise _not_found(exc) from exc
        return PauseResponse(task_id=task_id, requested_at=requested_at)

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(
        task_id: str,
        service: SupervisorService = Depends(get_service),
        limit: int | None = Query(default=None, ge=1, le=5000),
    ) -> list[EventResponse]:
        try:
            events = service.list_events(task_id, limit=limit)
        except KeyError as exc:
            raise _not_found(exc) from exc
        return [
            EventResponse(
                ts=str(item.get('ts') or ''),
                task_id=str(item.get('task_id') or task_id),
                type=str(item.get('type') or ''),
                payload=dict(item.get('payload') or {}),
            )
            for item in events
        ]

    return app


__all__ = ['create_app']
