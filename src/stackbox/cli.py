"""Command-line entry point for provisioning, inspecting and removing tenants."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

import yaml

from stackbox.config import Settings
from stackbox.container import build_service
from stackbox.errors import ConfigValidationError, DeploymentNotFoundError, InvalidTransitionError
from stackbox.models import DeploymentResult, DeploymentStatus, Plan

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_INPUT = 2


def load_tenant_file(path: Path) -> dict:
    """Read a tenant configuration. JSON files parse as YAML too."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Cannot read tenant configuration {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigValidationError(f"Tenant configuration {path} must be a mapping")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackbox", description="Provision isolated tenant stacks")
    parser.add_argument("--memory-state", action="store_true", help="Keep deployment records in process")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    provision = commands.add_parser("provision", help="Provision a tenant from a JSON or YAML file")
    provision.add_argument("config", type=Path)

    status = commands.add_parser("status", help="Show the latest deployment for a tenant")
    status.add_argument("tenant_id")

    deprovision = commands.add_parser("deprovision", help="Remove every resource of a tenant")
    deprovision.add_argument("tenant_id")

    upgrade = commands.add_parser("upgrade", help="Resize a tenant's database for a new plan")
    upgrade.add_argument("tenant_id")
    upgrade.add_argument("--plan", required=True, choices=[p.value for p in Plan])
    return parser


def _emit(payload: dict):
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def run(args: argparse.Namespace, service) -> int:
    if args.command == "provision":
        result = service.provision(load_tenant_file(args.config))
        _emit(result.model_dump(mode="json"))
        return EXIT_OK if result.status == DeploymentStatus.COMPLETED else EXIT_FAILED

    if args.command == "status":
        record = service.get_status(args.tenant_id)
        _emit(DeploymentResult.from_record(record).model_dump(mode="json"))
        return EXIT_OK

    if args.command == "deprovision":
        report = service.deprovision(args.tenant_id)
        _emit(report.model_dump(mode="json"))
        return EXIT_OK if report.succeeded else EXIT_FAILED

    if args.command == "upgrade":
        upgrade = service.upgrade_tier(args.tenant_id, args.plan)
        _emit(upgrade.model_dump(mode="json"))
        return EXIT_OK

    return EXIT_BAD_INPUT


def main(argv: Optional[List[str]] = None, service_factory: Optional[Callable] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    factory = service_factory or build_service

    service = None
    try:
        service = factory(Settings.from_env(), memory_state=args.memory_state)
        return run(args, service)
    except ConfigValidationError as e:
        logger.error("%s", e)
        _emit({"error": str(e), "kind": e.kind})
        return EXIT_BAD_INPUT
    except DeploymentNotFoundError as e:
        _emit({"error": str(e), "kind": e.kind})
        return EXIT_FAILED
    except InvalidTransitionError as e:
        _emit({"error": str(e), "kind": e.kind})
        return EXIT_FAILED
    finally:
        if service is not None:
            service.shutdown(wait=True)


if __name__ == "__main__":
    sys.exit(main())
