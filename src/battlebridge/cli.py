from __future__ import annotations

import argparse
import json
import sys

import httpx

_MODES = ['hitl', 'yolo']


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='battlebridge', description='Drive coding-agent battles through the battlebridge API')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='battlebridge API base URL')
    parser.add_argument('--token', default='', help='Optional API token (sent as x-bb-api-token)')

    sub = parser.add_subparsers(dest='command', required=True)

    add = sub.add_parser('add', help='Create a task')
    add.add_argument('--title', required=True, help='Task title')
    add.add_argument('--description', default='', help='Prompt payload for the agent')
    add.add_argument('--priority', type=int, default=0, help='Lower runs first')
    add.add_argument('--auto-start', action='store_true', help='Start a battle right away')
    add.add_argument('--mode', choices=_MODES, default=None, help='Supervision mode for --auto-start')

    tasks = sub.add_parser('tasks', help='List tasks')
    tasks.add_argument('--limit', type=int, default=20)
    tasks.add_argument('--status', default='', help='Only tasks in this status')

    status = sub.add_parser('status', help='Show battle status for a task')
    status.add_argument('task_id', help='Task id')

    start = sub.add_parser('start', help='Start a battle')
    start.add_argument('task_id', help='Task id')
    start.add_argument('--mode', choices=_MODES, default=None, help='hitl waits for plan approval, yolo runs straight through')
    start.add_argument('--foreground', action='store_true', help='Block until the battle finishes')

    nxt = sub.add_parser('next', help='Start the lowest-priority pending task')
    nxt.add_argument('--mode', choices=_MODES, default=None)

    approve = sub.add_parser('approve', help='Approve the plan of a battle awaiting approval')
    approve.add_argument('task_id', help='Task id')

    cancel = sub.add_parser('cancel', help='Cancel a running battle (task becomes paused)')
    cancel.add_argument('task_id', help='Task id')
    cancel.add_argument('--reason', default='', help='Optional reason')

    resume = sub.add_parser('resume', help='Resume a paused task')
    resume.add_argument('task_id', help='Task id')
    resume.add_argument('--mode', choices=_MODES, default=None)

    retry = sub.add_parser('retry', help='Move a failed task back to pending')
    retry.add_argument('task_id', help='Task id')

    events = sub.add_parser('events', help='List task events')
    events.add_argument('task_id', help='Task id')
    events.add_argument('--after-seq', type=int, default=0)

    history = sub.add_parser('history', help='Show battle history for a task')
    history.add_argument('task_id', help='Task id')

    sub.add_parser('active', help='List running battles')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {'x-bb-api-token': args.token} if args.token else {}

    with httpx.Client(timeout=60, headers=headers, transport=transport) as client:
        if args.command == 'add':
            response = client.post(
                f'{base}/api/tasks',
                json={
                    'title': args.title,
                    'description': args.description,
                    'priority': int(args.priority),
                    'auto_start': bool(args.auto_start),
                    'supervision_mode': args.mode,
                },
            )
        elif args.command == 'tasks':
            params: dict[str, object] = {'limit': int(args.limit)}
            if args.status.strip():
                params['status'] = args.status.strip().lower()
            response = client.get(f'{base}/api/tasks', params=params)
        elif args.command == 'status':
            response = client.get(f'{base}/api/tasks/{args.task_id}/battle')
        elif args.command == 'start':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/battle/start',
                json={'supervision_mode': args.mode, 'background': not bool(args.foreground)},
            )
        elif args.command == 'next':
            response = client.post(f'{base}/api/battles/next', json={'supervision_mode': args.mode})
        elif args.command == 'approve':
            response = client.post(f'{base}/api/tasks/{args.task_id}/battle/approve')
        elif args.command == 'cancel':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/battle/cancel',
                json={'reason': args.reason.strip() or None},
            )
        elif args.command == 'resume':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/battle/resume',
                json={'supervision_mode': args.mode},
            )
        elif args.command == 'retry':
            response = client.post(f'{base}/api/tasks/{args.task_id}/retry')
        elif args.command == 'events':
            response = client.get(
                f'{base}/api/tasks/{args.task_id}/events',
                params={'after_seq': int(args.after_seq)},
            )
        elif args.command == 'history':
            response = client.get(f'{base}/api/tasks/{args.task_id}/battles')
        elif args.command == 'active':
            response = client.get(f'{base}/api/battles/active')
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
