import argparse
import json
import logging
import os
import signal
import sys
import threading

import uvicorn

from taskworker.client.engine_client import EngineClient
from taskworker.config import settings
from taskworker.errors import TaskWorkerError
from taskworker.stub.app import create_app
from taskworker.worker.poller import ExternalTaskWorker

logger = logging.getLogger("taskworker")


def _parse_assignment(raw: str):
    name, sep, value = raw.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected name=value, got {raw!r}")
    try:
        # Numbers, booleans, lists and objects keep their JSON type
        return name, json.loads(value)
    except json.JSONDecodeError:
        return name, value


def logging_handler(task, ctx):
    """Logs what it received and completes the task without output variables."""
    values = {name: var.value for name, var in task.variables.items()}
    logger.info(json.dumps({
        "event": "task_received",
        "task_id": task.id,
        "topic": task.topic_name,
        "process_instance_id": task.process_instance_id,
        "variables": values,
    }, default=str))
    ctx.complete()


def run_worker(args) -> int:
    stop_event = threading.Event()

    def request_stop(signum, _frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping worker...")
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    variables = args.variables.split(",") if args.variables is not None else None
    if variables == [""]:
        variables = []

    with EngineClient.from_settings(settings) as client:
        worker = ExternalTaskWorker.from_settings(client, settings)
        for topic in args.topic:
            worker.handler(topic, args.lock_duration, variables)(logging_handler)

        logger.info("Starting external task worker... Press Ctrl+C to stop")
        worker.start(stop_event)

        if worker.in_flight:
            logger.info(f"Waiting up to {args.drain_timeout}s for {worker.in_flight} running tasks")
            if not worker.drain(args.drain_timeout):
                logger.warning(f"{worker.in_flight} tasks still running, leaving them to their lock timeout")
    return 0


def deploy(args) -> int:
    name = args.name or os.path.splitext(os.path.basename(args.file))[0]
    with EngineClient.from_settings(settings) as client, open(args.file, "rb") as bpmn:
        deployment_id = client.deploy_process(name, bpmn, os.path.basename(args.file))
    print(deployment_id)
    return 0


def start_process(args) -> int:
    variables = dict(args.var or [])
    with EngineClient.from_settings(settings) as client:
        instance_id = client.start_process_instance(args.key, variables, business_key=args.business_key)
    print(instance_id)
    return 0


def serve_stub(args) -> int:
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskworker", description="External task worker")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="poll topics and complete every task")
    run.add_argument("--topic", action="append", required=True)
    run.add_argument("--lock-duration", type=int, default=60000, help="lock duration in ms")
    run.add_argument("--variables", default=None, help="comma-separated variable names (default: all)")
    run.add_argument("--drain-timeout", type=float, default=30.0)
    run.set_defaults(func=run_worker)

    dep = sub.add_parser("deploy", help="deploy a BPMN file")
    dep.add_argument("file")
    dep.add_argument("--name", default=None)
    dep.set_defaults(func=deploy)

    start = sub.add_parser("start", help="start a process instance by definition key")
    start.add_argument("key")
    start.add_argument("--var", action="append", type=_parse_assignment)
    start.add_argument("--business-key", default=None)
    start.set_defaults(func=start_process)

    stub = sub.add_parser("stub", help="serve an in-memory engine for local development")
    stub.add_argument("--host", default="127.0.0.1")
    stub.add_argument("--port", type=int, default=settings.stub_port)
    stub.set_defaults(func=serve_stub)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=settings.log_level.upper(), format='[%(process)d] %(message)s')
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except TaskWorkerError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
