from __future__ import annotations

import argparse
import json
import os
import sys

import httpx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='awe-supervisor', description='Supervise long-running agent tasks')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Supervisor API base URL')
    parser.add_argument(
        '--api-token',
        default=os.getenv('AWE_API_TOKEN', ''),
        help='API token sent in the x-awe-api-token header (default: $AWE_API_TOKEN)',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    create = sub.add_parser('create', help='Create a task')
    create.add_argument('--title', required=True, help='Task title')
    create.add_argument('--description', default='', help='Task description handed to the agent')
    create.add_argument('--leader', required=True, help='Leader identity')
    create.add_argument('--collaborator', action='append', default=[], help='Collaborator identity (repeatable)')
    create.add_argument('--mode', choices=['solo', 'team'], default=None, help='Execution mode (default: from roster)')
    create.add_argument('--auto-start', action='store_true', help='Start supervision in the background')

    start = sub.add_parser('start', help='Start supervising an existing task')
    start.add_argument('task_id', help='Task id')
    start.add_argument(
        '--foreground',
        action='store_true',
        help='Block until supervision finishes instead of running in the background',
    )

    status = sub.add_parser('status', help='Get task status')
    status.add_argument('task_id', help='Task id')

    progress = sub.add_parser('progress', help='Show the task progress record')
    progress.add_argument('task_id', help='Task id')

    say = sub.add_parser('say', help='Send a message to the task inbox')
    say.add_argument('task_id', help='Task id')
    say.add_argument('message', nargs='+', help='Message text')

    pause = sub.add_parser('pause', help='Ask the running agent to pause')
    pause.add_argument('task_id', help='Task id')
    pause.add_argument('--message', default='', help='Optional reason shown to the agent')

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--limit', type=int, default=20)

    events = sub.add_parser('events', help='List supervision events')
    events.add_argument('task_id', help='Task id')
    events.add_argument('--limit', type=int, default=0, help='Only the last N events (0 = all)')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {'x-awe-api-token': args.api_token} if str(args.api_token or '').strip() else {}

    with httpx.Client(timeout=60, headers=headers) as client:
        if args.command == 'create':
            response = client.post(
                f'{base}/api/tasks',
                json={
                    'title': args.title,
                    'description': args.description,
                    'leader_id': args.leader,
                    'collaborators': args.collaborator,
                    'execution_mode': args.mode,
                    'auto_start': bool(args.auto_start),
                },
            )
        elif args.command == 'start':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/start',
                json={'background': not bool(args.foreground)},
                timeout=None if args.foreground else 60,
            )
        elif args.command == 'status':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'progress':
            response = client.get(f'{base}/api/tasks/{args.task_id}/progress')
        elif args.command == 'say':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/messages',
                json={'message': ' '.join(args.message)},
            )
        elif args.command == 'pause':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/pause',
                json={'message': (args.message.strip() or None)},
            )
        elif args.command == 'tasks':
            response = client.get(f'{base}/api/tasks', params={'limit': int(args.limit)})
        elif args.command == 'events':
            params = {'limit': int(args.limit)} if int(args.limit) > 0 else None
            response = client.get(f'{base}/api/tasks/{args.task_id}/events', params=params)
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
