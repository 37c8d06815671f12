"""Command-line interface for SMIME Gate."""

import asyncio
import signal
import sys
from types import FrameType

import click
import structlog

from smime_gate.config import get_settings
from smime_gate.core import configure_logging
from smime_gate.exceptions import ConfigurationError
from smime_gate.policy import load_policy
from smime_gate.services import SmimeGate
from smime_gate.transport import SpoolStore

logger = structlog.get_logger(__name__)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option("--json-logs/--no-json-logs", default=False, help="JSON log format")
@click.pass_context
def main(ctx: click.Context, debug: bool, json_logs: bool) -> None:
    """SMIME Gate - store-and-forward S/MIME mail gateway."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["json_logs"] = json_logs
    configure_logging(json_format=json_logs, debug=debug)


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the SMTP gateway."""
    logger.info("starting_gateway_service")

    try:
        settings = get_settings()
        policy = load_policy(settings.policy_path)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    gate = SmimeGate(settings, policy)

    def handle_signal(signum: int, frame: FrameType | None) -> None:
        logger.info("signal_received", signal=signum)
        gate.request_shutdown()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        asyncio.run(gate.run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("gateway_crashed", error=str(e))
        sys.exit(1)


@main.command("check-policy")
@click.option(
    "--path",
    "policy_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Policy file to check (defaults to POLICY_PATH)",
)
@click.pass_context
def check_policy(ctx: click.Context, policy_path: str | None) -> None:
    """Validate the policy file and list its rule tables."""
    if policy_path is None:
        try:
            policy_path = get_settings().policy_path
        except Exception as e:
            click.echo(f"Configuration error: {e}", err=True)
            sys.exit(1)

    try:
        policy = load_policy(policy_path)
    except ConfigurationError as e:
        click.echo(f"Policy error: {e.message}", err=True)
        sys.exit(1)

    # Credentials other than certificate paths are never printed
    click.echo(f"\nPolicy: {policy_path}")
    click.echo(f"\nSign rules ({len(policy.sign)}):")
    for rule in policy.sign:
        click.echo(f"   sender ~ {rule.sender!r}  cert={rule.cert_path}")
    click.echo(f"\nEncrypt rules ({len(policy.encrypt)}):")
    for rule in policy.encrypt:
        click.echo(f"   recipient ~ {rule.recipient!r}  cert={rule.cert_path}")
    click.echo(f"\nDecrypt rules ({len(policy.decrypt)}):")
    for rule in policy.decrypt:
        click.echo(f"   recipient ~ {rule.recipient!r}  cert={rule.cert_path}")
    click.echo(f"\nVerify rules ({len(policy.verify)}):")
    for rule in policy.verify:
        click.echo(f"   sender ~ {rule.sender!r}  cert={rule.cert_path}  ca={rule.ca_cert_path}")


@main.command()
@click.pass_context
def spool(ctx: click.Context) -> None:
    """Report mails left in the spool."""
    try:
        settings = get_settings()
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    count = asyncio.run(SpoolStore(settings).count_pending())
    click.echo(f"Spool directory: {settings.spool_dir}")
    click.echo(f"   Pending mails: {count}")

    # Leftover files are mails that were not forwarded
    sys.exit(1 if count else 0)


if __name__ == "__main__":
    main()
