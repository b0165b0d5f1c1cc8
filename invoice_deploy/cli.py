"""
Invoice Service Deployment Script

Usage:
    invoice-deploy --env staging               Deploy to staging
    invoice-deploy --env prod                  Deploy to production (auto-detects inactive color)
    invoice-deploy --env prod --color green    Deploy to production green
    invoice-deploy --env prod --switch --color green
                                               Switch traffic to an already running color
    invoice-deploy --env prod --rollback       Rollback production to previous color
    invoice-deploy --env prod --status         Show current production status
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from .config import DEFAULT_CONFIG_PATH, configure_logging, load_config
from .deployment_manager import DeploymentController, auto_approve
from .errors import DeploymentError, ValidationError
from .models import Color, Environment, StatusReport

logger = logging.getLogger('invoice_deploy.cli')


class DeployArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = DeployArgumentParser(
        prog='invoice-deploy',
        description='Invoice Service blue-green deployment',
        epilog=__doc__.split('Usage:', 1)[1].rstrip() if __doc__ else None,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('-e', '--env', required=True, choices=['staging', 'prod'],
                        help='Environment to deploy to')
    parser.add_argument('-c', '--color',
                        help='Color to deploy to (prod only, auto-detected if not specified)')
    parser.add_argument('-r', '--rollback', action='store_true',
                        help='Rollback to the other color (prod only)')
    parser.add_argument('-s', '--status', action='store_true',
                        help='Show current deployment status')
    parser.add_argument('--switch', action='store_true',
                        help='Switch traffic to --color without rebuilding (prod only)')
    parser.add_argument('-y', '--yes', action='store_true',
                        help='Approve confirmation prompts without asking')
    parser.add_argument('--json', action='store_true', help='Print status as JSON')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Configuration file path')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    return parser


def prompt(question: str) -> bool:
    """Ask a yes/no question on the terminal; anything but y/Y declines"""
    try:
        reply = input(f"{question} (y/N) ")
    except EOFError:
        print()
        return False
    return reply.strip()[:1] in ('y', 'Y')


def render_status(report: StatusReport) -> str:
    lines = [f"Deployment Status for {report.environment.value}", "=" * 32]

    if report.environment == Environment.PRODUCTION:
        lines.append(f"Active Version: {report.active.value} (revision {report.revision})")
        lines.append(f"Inactive Version: {report.inactive.value}")
    else:
        lines.append("Environment: staging (single deployment)")

    lines.append("")
    lines.append("Running Containers:")
    lines.append(report.listing.rstrip() or "(none)")

    if report.warnings:
        lines.append("")
        lines.extend(f"WARNING: {warning}" for warning in report.warnings)

    if report.history:
        lines.append("")
        lines.append("Recent Deployments:")
        for record in report.history:
            target = record.target_color.value if record.target_color else '-'
            lines.append(
                f"  {record.started_at.strftime('%Y-%m-%d %H:%M:%S')}  {record.operation:<8} "
                f"{target:<6} {record.status.value:<10} {record.initiated_by}"
                + (f"  ({record.error_message})" if record.error_message else "")
            )

    return "\n".join(lines)


async def run_command(args: argparse.Namespace) -> int:
    environment = Environment.parse(args.env)
    config = load_config(args.config)
    if not args.verbose:
        configure_logging(config['logging']['level'], config['logging']['file'])

    logger.info(f"{config['project']['name']} Deployment Script")
    logger.info(f"Environment: {environment.value}")

    controller = DeploymentController.from_config(
        config,
        environment,
        confirm=auto_approve if args.yes else prompt,
        initiated_by=os.environ.get('USER', 'cli')
    )

    if args.status:
        report = await controller.status()
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            print(render_status(report))
        return 0

    color = None
    if args.color:
        if environment == Environment.STAGING:
            logger.warning("--color is ignored for staging deployments")
        else:
            color = Color.parse(args.color)

    if args.rollback:
        result = await controller.rollback()
    elif args.switch:
        if environment != Environment.PRODUCTION:
            raise ValidationError("--switch is only available for production")
        if color is None:
            raise ValidationError("--switch requires --color")
        result = await controller.promote(color)
    elif environment == Environment.STAGING:
        result = await controller.deploy_staging()
    else:
        result = await controller.deploy_production(color)

    logger.info(result.message)
    if result.switched or environment == Environment.STAGING:
        print(render_status(await controller.status()))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    configure_logging('DEBUG' if args.verbose else 'INFO')

    try:
        return asyncio.run(run_command(args))
    except DeploymentError as e:
        logger.error(str(e))
        output = getattr(e, 'output', '')
        if output:
            logger.error(output)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted; containers may be left in an undefined state")
        return 1


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
