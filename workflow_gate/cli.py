#!/usr/bin/env python3
"""
Workflow Gate CLI

Usage:
    workflow-gate init --level 3 "Add OAuth login"
    workflow-gate status task-1a2b3c4d
    workflow-gate trigger task-1a2b3c4d Plan
    workflow-gate propose task-1a2b3c4d "git push origin main"
    workflow-gate record prop-0123456789ab --exit-code 0 --duration-ms 1200
    workflow-gate authorize task-1a2b3c4d "git push origin main" --by alice
    workflow-gate report task-1a2b3c4d
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .approval import QueueApprovalChannel
from .classifier import CommandClassifier
from .config import load_config
from .engine import WorkflowGateEngine
from .errors import AuditTamperError, GateError
from .paths import GatePaths
from .schema import AuthorizationScope

VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def _engine(args, use_approval_queue: bool = False) -> WorkflowGateEngine:
    paths = GatePaths(Path(args.dir).resolve())
    config = load_config(paths)
    return WorkflowGateEngine.from_config(paths, config, use_approval_queue=use_approval_queue)


def _print_task(task) -> None:
    print(f"Task: {task.id}")
    if task.description:
        print(f"  Description: {task.description}")
    print(f"  Level: {task.complexity_level}")
    print(f"  Status: {task.status.value}")
    print(f"  Session: {task.session_id}")
    for phase in task.required_phases:
        if task.is_completed(phase):
            mark = "✓"
        elif phase == task.current_phase:
            mark = "→"
        else:
            mark = " "
        print(f"  [{mark}] {phase.value}")
    if task.blocked_reason:
        print(f"  Blocked: {task.blocked_reason}")


def cmd_init(args):
    engine = _engine(args)
    task = engine.create_task(args.level, description=args.description or "", task_id=args.task_id)
    print(f"✓ Created task {task.id}")
    _print_task(task)


def cmd_status(args):
    engine = _engine(args)
    if args.task_id:
        tasks = [engine.get_task(args.task_id)]
    else:
        tasks = engine.tasks.list(include_archived=args.all)
    if args.json:
        print(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2))
        return
    if not tasks:
        print("No active tasks.")
    for task in tasks:
        _print_task(task)


def cmd_advance(args):
    engine = _engine(args)
    task = engine.advance(args.task_id, args.phase)
    print(f"✓ Task {task.id} is in {task.current_phase.value}")


def cmd_trigger(args):
    engine = _engine(args)
    result = engine.run_command(args.task_id, args.trigger)
    print(f"✓ {result.trigger.value}: task {result.task.id} is in {result.task.current_phase.value} "
          f"({result.task.status.value})")
    if result.report_path:
        print(f"  Report: {result.report_path}")


def cmd_propose(args):
    engine = _engine(args, use_approval_queue=args.wait_approval)
    if args.wait_approval:
        print("Waiting for approval if required (Ctrl-C to cancel)...", file=sys.stderr)
    try:
        decision = engine.propose(args.task_id, args.proposed_command, timeout=args.timeout)
    except KeyboardInterrupt:
        if engine.approval_channel is not None:
            for request in engine.approval_channel.pending(args.task_id):
                engine.approval_channel.withdraw(request.id)
        raise
    if args.json:
        print(decision.model_dump_json(indent=2))
    else:
        print(decision.describe())
        if decision.approved:
            print(f"  proposal: {decision.proposal_id}")
    if not decision.approved:
        sys.exit(1)


def cmd_record(args):
    engine = _engine(args)
    event = engine.record_result(args.proposal_id, args.exit_code, args.duration_ms)
    print(f"✓ Recorded event #{event.sequence} for task {event.task_id}")


def cmd_authorize(args):
    engine = _engine(args)
    record = engine.authorize(
        args.task_id,
        args.pattern,
        authorized_by=args.by,
        scope=AuthorizationScope.SESSION if args.session else AuthorizationScope.SINGLE_USE,
    )
    print(f"✓ Authorized `{record.command_pattern}` ({record.scope.value}) as {record.id}")


def cmd_session(args):
    engine = _engine(args)
    task = engine.start_session(args.task_id)
    print(f"✓ Task {task.id}: new work session {task.session_id}")


def cmd_pending(args):
    engine = _engine(args)
    channel = QueueApprovalChannel(engine.db)
    requests = channel.pending(args.task_id)
    if not requests:
        print("No pending approvals.")
        return
    for request in requests:
        print(f"{request.id}  task={request.task_id}  rule={request.rule or '-'}")
        print(f"    {request.command}")


def cmd_approve(args):
    engine = _engine(args)
    channel = QueueApprovalChannel(engine.db)
    decided = channel.decide(
        args.request_id,
        approved=not args.reject,
        decided_by=args.by,
        scope=AuthorizationScope.SESSION if args.session else AuthorizationScope.SINGLE_USE,
        pattern=args.rule,
        reason=args.reason,
    )
    if not decided:
        print(f"Error: request {args.request_id} is not pending", file=sys.stderr)
        sys.exit(1)
    print(f"✓ {'Rejected' if args.reject else 'Approved'} {args.request_id}")


def cmd_report(args):
    engine = _engine(args)
    if args.stdout:
        print(engine.render_report(args.task_id).to_markdown())
        return
    path = engine.write_report(args.task_id)
    print(f"✓ Report written to {path}")


def cmd_verify(args):
    engine = _engine(args)
    try:
        engine.verify(args.task_id)
    except AuditTamperError as e:
        print(f"✗ Audit chain for {args.task_id} FAILED: {e.reason}")
        sys.exit(1)
    print(f"✓ Audit chain for {args.task_id} intact")


def cmd_classify(args):
    paths = GatePaths(Path(args.dir).resolve())
    classifier: CommandClassifier = load_config(paths).build_classifier(paths)
    result = classifier.classify(args.proposed_command)
    print(f"{result.category.value}\t{result.rule}")


def main():
    parser = argparse.ArgumentParser(
        description="Workflow Gate - phase gating, authorization and audit for agent commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  workflow-gate init --level 2 "Fix flaky test"
  workflow-gate trigger task-1a2b3c4d Plan
  workflow-gate propose task-1a2b3c4d "pytest -x"
  workflow-gate authorize task-1a2b3c4d "git push origin main" --by alice
  workflow-gate report task-1a2b3c4d
        """
    )

    parser.add_argument('--dir', '-d', default='.', help='Working directory (default: current)')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', '-v', action='version', version=f'%(prog)s {VERSION}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser('init', help='Create a task')
    init_parser.add_argument('description', nargs='?', help='Task description')
    init_parser.add_argument('--level', '-l', type=int, required=True, choices=[1, 2, 3, 4],
                             help='Complexity level')
    init_parser.add_argument('--task-id', help='Explicit task id')
    init_parser.set_defaults(func=cmd_init)

    status_parser = subparsers.add_parser('status', help='Show task status')
    status_parser.add_argument('task_id', nargs='?', help='Task id (default: all active tasks)')
    status_parser.add_argument('--all', action='store_true', help='Include archived tasks')
    status_parser.add_argument('--json', action='store_true', help='JSON output')
    status_parser.set_defaults(func=cmd_status)

    advance_parser = subparsers.add_parser('advance', help='Move a task to a phase')
    advance_parser.add_argument('task_id')
    advance_parser.add_argument('phase', help='Init, Plan, Creative, QA, Build, Review or Archive')
    advance_parser.set_defaults(func=cmd_advance)

    trigger_parser = subparsers.add_parser('trigger', help='Run a trigger word')
    trigger_parser.add_argument('task_id')
    trigger_parser.add_argument('trigger', help='e.g. Plan, Self-Review, Check-Progress, Archive')
    trigger_parser.set_defaults(func=cmd_trigger)

    propose_parser = subparsers.add_parser('propose', help='Ask whether a command may run')
    propose_parser.add_argument('task_id')
    propose_parser.add_argument('proposed_command', help='The exact command line')
    propose_parser.add_argument('--json', action='store_true', help='Print the decision as JSON')
    propose_parser.add_argument('--wait-approval', action='store_true',
                                help='Block on a human approval for unauthorized remote writes')
    propose_parser.add_argument('--timeout', type=float, help='Seconds to wait for approval')
    propose_parser.set_defaults(func=cmd_propose)

    record_parser = subparsers.add_parser('record', help='Record the result of an approved command')
    record_parser.add_argument('proposal_id', help='Proposal id printed by `propose`')
    record_parser.add_argument('--exit-code', type=int, required=True)
    record_parser.add_argument('--duration-ms', type=int, default=0)
    record_parser.set_defaults(func=cmd_record)

    authorize_parser = subparsers.add_parser('authorize', help='Authorize a mutating command')
    authorize_parser.add_argument('task_id')
    authorize_parser.add_argument('pattern', help='Exact command, or a rule name with --session')
    authorize_parser.add_argument('--by', required=True, help='Who is authorizing')
    authorize_parser.add_argument('--session', action='store_true',
                                  help='Valid until the task is archived instead of single-use')
    authorize_parser.set_defaults(func=cmd_authorize)

    session_parser = subparsers.add_parser('session', help='Start a new work session')
    session_parser.add_argument('task_id')
    session_parser.set_defaults(func=cmd_session)

    pending_parser = subparsers.add_parser('pending', help='List approval requests awaiting a decision')
    pending_parser.add_argument('task_id', nargs='?')
    pending_parser.set_defaults(func=cmd_pending)

    approve_parser = subparsers.add_parser('approve', help='Decide a pending approval request')
    approve_parser.add_argument('request_id')
    approve_parser.add_argument('--by', required=True, help='Who is deciding')
    approve_parser.add_argument('--reject', action='store_true', help='Reject instead of approve')
    approve_parser.add_argument('--session', action='store_true', help='Grant for the rest of the task')
    approve_parser.add_argument('--rule', help='With --session, grant a whole classifier rule')
    approve_parser.add_argument('--reason', help='Note recorded with the decision')
    approve_parser.set_defaults(func=cmd_approve)

    report_parser = subparsers.add_parser('report', help='Write the audit report')
    report_parser.add_argument('task_id')
    report_parser.add_argument('--stdout', action='store_true', help='Print instead of writing a file')
    report_parser.set_defaults(func=cmd_report)

    verify_parser = subparsers.add_parser('verify', help='Verify the audit hash chain')
    verify_parser.add_argument('task_id')
    verify_parser.set_defaults(func=cmd_verify)

    classify_parser = subparsers.add_parser('classify', help='Classify a command without proposing it')
    classify_parser.add_argument('proposed_command')
    classify_parser.set_defaults(func=cmd_classify)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    level = logging.WARNING
    if args.verbose:
        level = logging.DEBUG
    else:
        try:
            level = getattr(logging, load_config(GatePaths(Path(args.dir).resolve())).log_level)
        except GateError:
            pass  # reported by the command itself
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    try:
        args.func(args)
    except GateError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
