import asyncio
import hashlib
import hmac
import logging
from pathlib import Path
from tempfile import TemporaryDirectory

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from conveyor.collaborators.approval import ApprovalBroker
from conveyor.collaborators.scm import checkout_repo
from conveyor.config import ConcurrencyPolicy, config
from conveyor.exceptions import CommandError, ConfigurationError, RunAlreadyActive
from conveyor.runner import RunRegistry, load_pipeline, run_pipeline, validate_pipeline
from conveyor.schemas import ApprovalDecision, TriggerEvent, TriggerInfo
from conveyor.schemas.pipeline import PipelineDef
from conveyor.store import RunStore

logger = logging.getLogger(__name__)

registry = RunRegistry()
approvals = ApprovalBroker()
store = RunStore(config.runs_dir)
_tasks: set[asyncio.Task] = set()


def verify_signature(body: bytes, signature: str | None) -> bool:
    if config.webhook_secret is None:
        return True
    if not signature:
        return False
    expected = hmac.new(
        config.webhook_secret.get_secret_value().encode(), body, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(f'sha256={expected}', signature)


def parse_event(event: str, payload: dict) -> TriggerInfo | None:
    """Maps a GitHub ``push`` / ``pull_request`` event to a trigger, or None to ignore it."""
    repo = payload['repository']
    if event == 'push':
        ref = payload['ref']
        if payload.get('deleted') or not ref.startswith('refs/heads/'):
            return None
        return TriggerInfo(
            event=TriggerEvent.main_line_update,
            branch=ref.removeprefix('refs/heads/'),
            build_number=0,
            clone_url=repo['clone_url'],
            repo_name=repo['full_name'],
        )
    if event == 'pull_request':
        if payload['action'] not in ('opened', 'synchronize', 'reopened'):
            return None
        return TriggerInfo(
            event=TriggerEvent.change_proposal,
            branch=payload['pull_request']['head']['ref'],
            change_id=str(payload['number']),
            build_number=0,
            clone_url=repo['clone_url'],
            repo_name=repo['full_name'],
        )
    return None


async def fetch_pipeline(trigger: TriggerInfo) -> PipelineDef:
    with TemporaryDirectory() as path:
        await checkout_repo(trigger.clone_url, trigger.repo_name, trigger.branch, path)
        return load_pipeline(Path(path) / config.pipeline_file)


async def start_run(definition: PipelineDef, trigger: TriggerInfo):
    try:
        await run_pipeline(
            definition, trigger, registry=registry, store=store, approvals=approvals
        )
    except Exception:
        # Otherwise the reserved run would look like it is still running
        store.release(definition.name, trigger.build_number)
        raise


def _log_task_result(task: asyncio.Task):
    _tasks.discard(task)
    if task.cancelled() or (e := task.exception()) is None:
        return
    if isinstance(e, RunAlreadyActive):
        logger.warning(str(e))
    else:
        logger.error('Run crashed', exc_info=e)


async def webhook(request: Request):
    body = await request.body()
    if not verify_signature(body, request.headers.get('x-hub-signature-256')):
        return Response('Bad signature', 401)
    event = request.headers.get('x-github-event', '')
    trigger = parse_event(event, await request.json())
    if trigger is None:
        return Response(None, 204)

    try:
        definition = await fetch_pipeline(trigger)
        validate_pipeline(definition)
    except ConfigurationError as e:
        logger.warning(f'Not starting {trigger.repo_name}@{trigger.branch}: {e}')
        return JSONResponse({'error': str(e)}, 422)
    except CommandError as e:
        logger.error(f'Cannot fetch {trigger.repo_name}@{trigger.branch}: {e}')
        return JSONResponse({'error': 'Cannot fetch the repository'}, 502)

    if (
        definition.options.disable_concurrent_builds
        and config.concurrency_policy == ConcurrencyPolicy.reject
        and registry.is_active(definition.name)
    ):
        return JSONResponse({'error': f'{definition.name} is already running'}, 409)

    build_number = store.next_build_number(definition.name)
    trigger = trigger.model_copy(
        update={
            'build_number': build_number,
            'build_url': config.build_url(definition.name, build_number),
        }
    )
    task = asyncio.create_task(start_run(definition, trigger))
    _tasks.add(task)
    task.add_done_callback(_log_task_result)
    return JSONResponse(
        {'pipeline': definition.name, 'build_number': build_number}, 202
    )


async def get_run(request: Request):
    pipeline = request.path_params['pipeline']
    build_number = request.path_params['build_number']
    result = store.load(pipeline, build_number)
    if result is not None:
        return Response(result.model_dump_json(), media_type='application/json')
    if store.run_dir(pipeline, build_number).is_dir():
        return JSONResponse({'status': 'running'})
    return JSONResponse({'error': 'Run not found'}, 404)


async def cancel_run(request: Request):
    run_id = f'{request.path_params["pipeline"]}-{request.path_params["build_number"]}'
    if not registry.cancel(run_id, 'Cancelled via API'):
        return JSONResponse({'error': 'Run is not active'}, 404)
    return Response(None, 202)


async def list_gates(request: Request):
    return JSONResponse(
        [
            {'gate_id': g.gate_id, 'message': g.message, 'since': g.since.isoformat()}
            for g in approvals.pending()
        ]
    )


async def decide_gate(request: Request):
    try:
        decision = ApprovalDecision.model_validate(await request.json())
    except ValidationError as e:
        return JSONResponse({'error': str(e)}, 400)
    if not approvals.submit(request.path_params['gate_id'], decision):
        return JSONResponse({'error': 'Gate is not pending'}, 404)
    return Response(None, 204)


app = Starlette(
    debug=config.debug,
    routes=[
        Route('/webhook', webhook, methods=['POST']),
        Route('/runs/{pipeline}/{build_number:int}', get_run),
        Route('/runs/{pipeline}/{build_number:int}/cancel', cancel_run, methods=['POST']),
        Route('/gates', list_gates),
        Route('/gates/{gate_id:path}', decide_gate, methods=['POST']),
    ],
)
