#!/usr/bin/env python3
"""
Command-line entry point: run pipelines in-process or start the HTTP service.

The process exit code is the run's exit code (0 success, 1 failure,
2 timed out, 3 aborted).
"""

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional

from pydantic import ValidationError

from gantry.config_loader import ConfigLoader, build_engine
from gantry.errors import ConfigurationError, GantryError, PipelineError
from gantry.events import EventType, get_event_bus
from gantry.pipeline.approvals import ApprovalBroker
from gantry.pipeline.loader import PipelineLoader
from gantry.pipeline.schema import ApprovalEvent, PipelineDefinition, PipelineRun
from gantry.strategies import InfrastructureConfig, build_infrastructure, default_router
from gantry.utils.helpers import format_duration, seconds_between

logger = logging.getLogger("gantry.cli")

USAGE_ERROR = 64


def _parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    params = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ConfigurationError(f"Parameter '{pair}' must be KEY=VALUE")
        key, value = pair.split("=", 1)
        params[key.strip()] = value
    return params


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--param", "-p",
        action="append",
        metavar="KEY=VALUE",
        help="Pipeline parameter (repeatable)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Service configuration YAML (defaults to GANTRY_SERVICE_CONFIG)",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every input gate automatically",
    )
    parser.add_argument(
        "--approver",
        default=None,
        help="Approver name used for gate decisions (defaults to the first allowed approver)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the final run snapshot as JSON",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Do not echo step output",
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="gantry", description="Minimal CI/CD pipeline orchestrator")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Build and run the pipeline for an application")
    run.add_argument("application", help="Application type (nodeJSVM, nodeJSEKS, javaVM, javaEKS)")
    run.add_argument("component", help="Component name, e.g. 'cart'")
    run.add_argument("--branch", default="main")
    run.add_argument("--environment", default="dev", help="Target environment of the deploy stage")
    run.add_argument("--artifact-repository", default=None)
    run.add_argument("--deploy-job", default=None)
    run.add_argument("--registry", default=None, help="Container registry (EKS strategies)")
    _add_run_options(run)

    exec_ = sub.add_parser("exec", help="Run a pipeline definition from a YAML file")
    exec_.add_argument("path", help="Pipeline YAML file")
    _add_run_options(exec_)

    infra = sub.add_parser("infra", help="Run the Terraform pipeline for a stack")
    infra.add_argument("name", help="Stack name")
    infra.add_argument("--directory", default=".", help="Terraform root module")
    infra.add_argument("--environment", default="dev")
    infra.add_argument("--branch", default="main")
    infra.add_argument("--var-file", default=None)
    infra.add_argument("--allow", action="append", metavar="APPROVER", help="Allowed approver (repeatable)")
    _add_run_options(infra)

    validate = sub.add_parser("validate", help="Load pipeline files and print warnings")
    validate.add_argument("paths", nargs="+", help="Pipeline YAML files")

    serve = sub.add_parser("serve", help="Start the HTTP service")
    serve.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", 5000)))
    serve.add_argument("--config", default=None, help="Service configuration YAML")

    return parser.parse_args(argv)


def _gate_listener(args: argparse.Namespace, approvals: ApprovalBroker):
    """Answer gates from the terminal, or approve them outright with --auto-approve."""
    interactive = sys.stdin.isatty()

    def answer(run: PipelineRun, gate) -> None:
        approver = args.approver or (gate.approvers[0] if gate.approvers else "cli")
        if args.auto_approve:
            decision = "approve"
        elif interactive:
            reply = input(f"[gate] {gate.stage}: {gate.message} [y/N] ").strip().lower()
            decision = "approve" if reply in ("y", "yes") else "deny"
        else:
            print(f"[gate] {gate.stage}: {gate.message} (waiting; use --auto-approve to skip)")
            return

        supplied = {}
        for parameter in gate.parameters:
            if interactive and not args.auto_approve and decision == "approve":
                supplied[parameter.name] = input(f"[gate] {parameter.name}: ")
        approvals.submit(ApprovalEvent(
            runId=run.run_id,
            stageName=gate.stage,
            approver=approver,
            decision=decision,
            suppliedParameters=supplied,
        ))

    return answer


def _print_log_line(event) -> None:
    print(f"[{event.data.get('stage')}] {event.data.get('line')}")


def _execute(definition: PipelineDefinition, parameters: Dict[str, str], args: argparse.Namespace) -> int:
    capabilities = ConfigLoader.build_capabilities(ConfigLoader.load_service_config(args.config))
    event_bus = get_event_bus()
    if not args.quiet:
        event_bus.subscribe(EventType.LOG_LINE, _print_log_line)

    engine = build_engine(capabilities, event_bus=event_bus)
    engine.approvals.add_listener(_gate_listener(args, engine.approvals))

    try:
        run = engine.execute(definition, parameters)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 3

    if args.json:
        print(json.dumps(run.snapshot(), indent=2))
    else:
        for path, result in run.stage_results.items():
            suffix = f" ({result.cause.value})" if result.cause else ""
            took = format_duration(seconds_between(result.started_at, result.finished_at))
            print(f"{result.status.value:<10} {took:>7}  {path}{suffix}")
        took = format_duration(seconds_between(run.started_at, run.finished_at))
        print(f"Run {run.run_id}: {run.status.value} in {took}" + (f" - {run.error}" if run.error else ""))
    return run.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        from gantry import create_app

        app = create_app(config_path=args.config)
        print(f"Starting gantry on http://{args.host}:{args.port}")
        try:
            app.run(host=args.host, port=args.port, threaded=True)
        except KeyboardInterrupt:
            print("\nShutting down gantry...")
            app.run_service.stop()
        return 0

    loader = PipelineLoader()
    try:
        if args.command == "validate":
            status = 0
            for path in args.paths:
                try:
                    definition = loader.load_from_yaml(path)
                except (ConfigurationError, FileNotFoundError) as e:
                    print(f"[error] {path}: {e}")
                    status = 1
                    continue
                warnings = loader.validate_pipeline(definition)
                print(f"[ok] {path}: {definition.name} ({len(warnings)} warning(s))")
                for warning in warnings:
                    print(f"  - {warning}")
            return status

        parameters = _parse_params(args.param)
        if args.command == "run":
            request = {
                "application": args.application,
                "component": args.component,
                "parameters": parameters,
                "branch": args.branch,
                "environment": args.environment,
            }
            for key in ("artifact_repository", "deploy_job", "registry"):
                if getattr(args, key):
                    request[key] = getattr(args, key)
            router = default_router()
            config = router.resolve(request)
            definition = router.build(config)
            parameters = dict(config.parameters)
        elif args.command == "exec":
            definition = loader.load_from_yaml(args.path)
        else:
            definition = build_infrastructure(InfrastructureConfig(
                name=args.name,
                directory=args.directory,
                environment=args.environment,
                branch=args.branch,
                var_file=args.var_file,
                approvers=args.allow or [],
            ))

        return _execute(definition, parameters, args)

    except FileNotFoundError as e:
        print(f"[error] {e}")
        return USAGE_ERROR
    except (ConfigurationError, PipelineError, ValidationError) as e:
        print(f"[error] {type(e).__name__}: {e}")
        return USAGE_ERROR
    except GantryError as e:
        print(f"[error] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
