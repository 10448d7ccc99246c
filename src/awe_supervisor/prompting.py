from __future__ import annotations

from pathlib import Path
from string import Template
from typing import TYPE_CHECKING, Iterable

from awe_supervisor.domain.progress import ProgressRecord
from awe_supervisor.domain.task import Task
from awe_supervisor.storage.artifacts import TaskStateStore

if TYPE_CHECKING:
    from awe_supervisor.alignment import AlignmentExchange

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / 'prompts'


def load_prompt_template(
    *,
    template_name: str,
    template_dir: Path,
    cache: dict[str, Template],
) -> Template:
    key = str(template_name or '').strip()
    if not key:
        raise ValueError('template_name is required')
    cached = cache.get(key)
    if cached is not None:
        return cached
    safe_name = Path(key).name
    if safe_name != key:
        raise ValueError(f'invalid prompt template name: {template_name}')
    template_path = (template_dir / safe_name).resolve(strict=False)
    base_dir = template_dir.resolve(strict=False)
    try:
        template_path.relative_to(base_dir)
    except ValueError as exc:
        raise ValueError(f'invalid prompt template path: {template_name}') from exc
    template = Template(template_path.read_text(encoding='utf-8'))
    cache[key] = template
    return template


def render_prompt_template(
    *,
    template_name: str,
    template_dir: Path,
    cache: dict[str, Template],
    fields: dict[str, object],
) -> str:
    template = load_prompt_template(template_name=template_name, template_dir=template_dir, cache=cache)
    normalized = {str(k): ('' if v is None else str(v)) for k, v in fields.items()}
    return template.safe_substitute(normalized)


def format_operator_block(messages: Iterable[str], *, leader_id: str) -> str:
    lines = [str(item).strip() for item in messages if str(item or '').strip()]
    if not lines:
        return ''
    quoted = '\n'.join(f'> {line}' for line in lines)
    return (
        '\n--- INSTRUCTIONS FROM THE HUMAN OPERATOR ---\n'
        f'{quoted}\n'
        '---\n'
        f'Before continuing, {leader_id or "the leader"} must write a checkpoint capturing the current state, '
        'acknowledge this guidance, and adjust direction if instructed.\n'
    )


def format_history(history: Iterable['AlignmentExchange']) -> str:
    blocks: list[str] = []
    for idx, exchange in enumerate(history, start=1):
        question = str(exchange.question or '').strip() or '(no question recorded)'
        answer = '\n'.join(f'   {line}' for line in str(exchange.answer or '').strip().splitlines()) or '   (empty)'
        blocks.append(f'{idx}. You asked: {question}\n   Operator answered:\n{answer}')
    return '\n\n'.join(blocks) or '(no exchanges yet)'


class PromptBuilder:
    def __init__(self, *, store: TaskStateStore, template_dir: Path | None = None):
        self.store = store
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self._cache: dict[str, Template] = {}

    def briefing(self, task: Task, *, repo_url: str | None, operator_messages: list[str] | None = None) -> str:
        fields = self._task_fields(task, repo_url=repo_url)
        fields['operator_block'] = format_operator_block(operator_messages or [], leader_id=task.leader_id)
        return self._render('task_briefing.md', fields)

    def resume(
        self,
        task: Task,
        progress: ProgressRecord,
        *,
        repo_url: str | None,
        operator_messages: list[str] | None = None,
    ) -> str:
        fields = self._task_fields(task, repo_url=repo_url)
        fields.update(self._progress_fields(progress))
        fields['operator_block'] = format_operator_block(operator_messages or [], leader_id=task.leader_id)
        return self._render('task_resume.md', fields)

    def alignment_resume(
        self,
        task: Task,
        history: list['AlignmentExchange'],
        *,
        repo_url: str | None,
        round_no: int,
        max_rounds: int,
    ) -> str:
        fields = self._task_fields(task, repo_url=repo_url)
        fields.update({'history': format_history(history), 'round_no': round_no, 'max_rounds': max_rounds})
        return self._render('alignment_resume.md', fields)

    def remediation(
        self,
        task: Task,
        progress: ProgressRecord | None,
        *,
        attempt: int,
        max_attempts: int,
    ) -> str:
        fields = self._task_fields(task, repo_url=task.repo_url)
        fields.update(self._progress_fields(progress))
        fields.update({'attempt': attempt, 'max_attempts': max_attempts})
        return self._render('remediation.md', fields)

    def _render(self, template_name: str, fields: dict[str, object]) -> str:
        return render_prompt_template(
            template_name=template_name,
            template_dir=self.template_dir,
            cache=self._cache,
            fields=fields,
        ).rstrip() + '\n'

    def _task_fields(self, task: Task, *, repo_url: str | None) -> dict[str, object]:
        paths = self.store.paths(task.task_id)
        return {
            'title': task.title,
            'task_id': task.task_id,
            'description': str(task.description or '').strip() or '(no description)',
            'leader_id': task.leader_id,
            'team': ', '.join(task.roster) or task.leader_id,
            'execution_mode': task.execution_mode,
            'repo_url': repo_url or 'none',
            'progress_file': paths.progress_json,
            'inbox_file': paths.inbox_json,
        }

    @staticmethod
    def _progress_fields(progress: ProgressRecord | None) -> dict[str, object]:
        if progress is None:
            return {'status': 'missing', 'percent_complete': 0, 'summary': '(none)', 'last_checkpoint': '(none)'}
        last = progress.checkpoints[-1].description if progress.checkpoints else '(none)'
        return {
            'status': progress.status,
            'percent_complete': progress.percent_complete,
            'summary': progress.summary or '(none)',
            'last_checkpoint': last,
        }


__all__ = [
    'DEFAULT_TEMPLATE_DIR',
    'PromptBuilder',
    'format_history',
    'format_operator_block',
    'load_prompt_template',
    'render_prompt_template',
]
