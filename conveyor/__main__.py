import sys

import argparse
import asyncio
import uvicorn
from pathlib import Path

from conveyor.collaborators.approval import StaticApprovalSource
from conveyor.config import config
from conveyor.exceptions import ConfigurationError
from conveyor.runner import RunRegistry, load_pipeline, run_pipeline
from conveyor.schemas import ApprovalDecision, RunStatus, TriggerEvent, TriggerInfo
from conveyor.store import RunStore

EXIT_CODES = {
    RunStatus.success: 0,
    RunStatus.failure: 1,
    RunStatus.aborted: 130,
}


def parse_run_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='conveyor run')
    parser.add_argument('--workdir', type=Path, default=Path('.'))
    parser.add_argument('--file', help='pipeline file, relative to the workdir')
    parser.add_argument('--branch', default='main')
    parser.add_argument('--change-id')
    parser.add_argument('--build-number', type=int)
    decision = parser.add_mutually_exclusive_group()
    decision.add_argument('--approve', action='store_true', help='approve every gate')
    decision.add_argument('--reject', action='store_true', help='reject every gate')
    return parser.parse_args(argv)


async def run_local(args: argparse.Namespace) -> RunStatus:
    workdir = args.workdir.absolute()
    definition = load_pipeline(workdir / (args.file or config.pipeline_file))
    store = RunStore(config.runs_dir)
    build_number = args.build_number or store.next_build_number(definition.name)
    trigger = TriggerInfo(
        event=(
            TriggerEvent.change_proposal
            if args.change_id
            else TriggerEvent.main_line_update
        ),
        branch=args.branch,
        change_id=args.change_id,
        build_number=build_number,
        build_url=config.build_url(definition.name, build_number),
    )
    if args.approve or args.reject:
        approvals = StaticApprovalSource(
            ApprovalDecision(approved=args.approve, by='cli')
        )
    else:
        approvals = StaticApprovalSource(None)
    result = await run_pipeline(
        definition,
        trigger,
        registry=RunRegistry(),
        store=store,
        approvals=approvals,
        workdir=workdir,
    )
    print(result.model_dump_json(indent=2))
    return result.status


if len(sys.argv) == 1:
    raise ValueError('Usage: conveyor run [options] | conveyor server')
if sys.argv[1] == 'run':
    try:
        status = asyncio.run(run_local(parse_run_args(sys.argv[2:])))
    except ConfigurationError as e:
        print(f'Invalid pipeline: {e}', file=sys.stderr)
        sys.exit(2)
    sys.exit(EXIT_CODES[status])
elif sys.argv[1] == 'server':
    from conveyor.web import app

    uvicorn.run(app, host=config.host, port=config.port)
else:
    raise ValueError(f'Unknown command {sys.argv[1]!r}')
