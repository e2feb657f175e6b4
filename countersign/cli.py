"""
Countersign CLI

Operator commands for definitions, audit chains, composites and
long-term validation.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from . import __version__
from .authz import AuthorizationRequest
from .core import Config
from .core.clock import SystemClock, format_datetime, parse_datetime
from .core.engine import Countersign
from .core.exceptions import CountersignError
from .persistence import InMemoryStore
from .timestamping import CompositeSignature
from .workflow import DefinitionRegistry


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults."""
    if config_path:
        return Config.from_file(config_path)
    return Config()


def load_document(path: str) -> Dict[str, Any]:
    """Read a JSON or YAML document."""
    with open(path) as f:
        if Path(path).suffix in (".yaml", ".yml"):
            return yaml.safe_load(f) or {}
        return json.load(f)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="countersign",
        description="Countersign - Signing workflows, trusted timestamps and authorization",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    definition_parser = subparsers.add_parser(
        "validate-definition",
        help="Validate a workflow definition",
    )
    definition_parser.add_argument("definition", help="Definition file (JSON or YAML)")

    audit_parser = subparsers.add_parser("verify-audit", help="Verify an audit hash chain")
    audit_target = audit_parser.add_mutually_exclusive_group(required=True)
    audit_target.add_argument("--stream", help="Stream id, e.g. decisions")
    audit_target.add_argument("--document", help="Document id")

    composite_parser = subparsers.add_parser("verify-composite", help="Verify a signature composite")
    composite_target = composite_parser.add_mutually_exclusive_group(required=True)
    composite_target.add_argument("--id", dest="composite_id", help="Stored composite id")
    composite_target.add_argument("--file", dest="composite_file", help="Exported composite record (JSON)")
    composite_parser.add_argument("--content", help="Document content file to check against")

    ltv_parser = subparsers.add_parser("ltv-scan", help="Run the long-term validation scan")
    ltv_parser.add_argument("--now", help="Evaluate as of this ISO-8601 instant")

    authorize_parser = subparsers.add_parser("authorize", help="Evaluate an authorization request")
    authorize_parser.add_argument("--subject", required=True)
    authorize_parser.add_argument("--action", required=True)
    authorize_parser.add_argument("--resource", required=True)
    authorize_parser.add_argument("--resource-type", default="document")
    authorize_parser.add_argument(
        "--attrs",
        help="JSON object with user, resource and env attribute maps",
        default=None,
    )

    subparsers.add_parser("config-check", help="Validate configuration")
    subparsers.add_parser("version", help="Show version")

    return parser


async def cmd_validate_definition(args: argparse.Namespace, config: Config) -> int:
    """Validate a workflow definition without storing it."""
    logger = logging.getLogger(__name__)

    try:
        data = load_document(args.definition)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Cannot read definition: {e}")
        print(f"Definition: UNREADABLE - {e}", file=sys.stderr)
        return 1

    registry = DefinitionRegistry(InMemoryStore(), SystemClock(), config=config.workflow)
    errors = registry.validate(data)
    if errors:
        print("Definition: INVALID")
        for error in errors:
            print(f"  - {error}")
        return 1

    definition = registry.parse(data)
    print(json.dumps({
        "valid": True,
        "name": definition.name,
        "type": definition.workflow_type.value,
        "stages": [stage.stage_id for stage in definition.stages],
        "estimated_days": registry.estimate_completion(definition),
    }, indent=2))
    return 0


async def cmd_verify_audit(args: argparse.Namespace, config: Config) -> int:
    """Verify one audit stream."""
    logger = logging.getLogger(__name__)
    stream_id = args.stream or f"document:{args.document}"

    engine = Countersign(config)
    await engine.start()

    try:
        verification = await engine.verify_audit(stream_id)
        print(json.dumps(verification.to_dict(), indent=2))
        return 0 if verification.valid else 1

    except CountersignError as e:
        logger.error(f"Audit verification failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    finally:
        await engine.stop()


async def cmd_verify_composite(args: argparse.Namespace, config: Config) -> int:
    """Verify a composite offline."""
    logger = logging.getLogger(__name__)

    content = Path(args.content).read_bytes() if args.content else None
    engine = Countersign(config)
    await engine.start()

    try:
        if args.composite_file:
            composite = CompositeSignature.from_record(load_document(args.composite_file))
        else:
            composite = args.composite_id
        verification = await engine.verify_composite(composite, document_content=content)
        print(json.dumps(verification.to_dict(), indent=2))
        return 0 if verification.valid else 1

    except CountersignError as e:
        logger.error(f"Composite verification failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    finally:
        await engine.stop()


async def cmd_ltv_scan(args: argparse.Namespace, config: Config) -> int:
    """Validate every composite that is due."""
    logger = logging.getLogger(__name__)
    now: Optional[datetime] = parse_datetime(args.now) if args.now else None

    engine = Countersign(config)
    await engine.start()

    try:
        reports = await engine.run_long_term_validation(now)
        print(json.dumps({
            "scanned": len(reports),
            "invalid": [r.composite_id for r in reports if not r.valid],
            "retimestamped": [r.composite_id for r in reports if r.retimestamped],
            "reports": [r.to_record() for r in reports],
        }, indent=2))
        return 0 if all(r.valid for r in reports) else 1

    except CountersignError as e:
        logger.error(f"Long-term validation failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    finally:
        await engine.stop()


async def cmd_authorize(args: argparse.Namespace, config: Config) -> int:
    """Evaluate one authorization request."""
    logger = logging.getLogger(__name__)

    try:
        attrs = json.loads(args.attrs) if args.attrs else {}
    except json.JSONDecodeError as e:
        print(f"Invalid --attrs: {e}", file=sys.stderr)
        return 1

    engine = Countersign(config)
    await engine.start()

    try:
        decision = await engine.authorize(AuthorizationRequest(
            subject=args.subject,
            action=args.action,
            resource=args.resource,
            resource_type=args.resource_type,
            user_attrs=attrs.get("user", {}),
            resource_attrs=attrs.get("resource", {}),
            env_attrs=attrs.get("env", {}),
        ))
        print(json.dumps(decision.to_dict(), indent=2))
        return 0 if decision.allowed else 1

    except CountersignError as e:
        logger.error(f"Authorization failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    finally:
        await engine.stop()


def cmd_config_check(args: argparse.Namespace, config: Config) -> int:
    """Print the effective configuration and its validation errors."""
    errors = config.validate()
    print(json.dumps({
        "valid": not errors,
        "errors": errors,
        "checked_at": format_datetime(SystemClock().now()),
        "config": config.to_dict(),
    }, indent=2))
    return 0 if not errors else 1


def cmd_version(args: argparse.Namespace, config: Config) -> int:
    """Show version."""
    print(f"Countersign v{__version__}")
    return 0


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    if args.command == "validate-definition":
        return await cmd_validate_definition(args, config)

    elif args.command == "verify-audit":
        return await cmd_verify_audit(args, config)

    elif args.command == "verify-composite":
        return await cmd_verify_composite(args, config)

    elif args.command == "ltv-scan":
        return await cmd_ltv_scan(args, config)

    elif args.command == "authorize":
        return await cmd_authorize(args, config)

    elif args.command == "config-check":
        return cmd_config_check(args, config)

    elif args.command == "version":
        return cmd_version(args, config)

    else:
        print("No command specified. Use --help for usage.")
        return 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    log_level = "DEBUG" if args.verbose else args.log_level
    setup_logging(log_level)

    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
