"""AsyncClick CLI for vulnsync.

Provides user-facing commands:
- add-component: Register a component in the inventory
- components: List the inventory
- analyze: Run enabled sources against the inventory (or given components)
- vulnerabilities: List stored vulnerabilities
- generate-key / encrypt-secret: Manage encrypted source secrets
"""

import json

import asyncclick as click
import structlog

from vulnsync.core.config import load_config
from vulnsync.core.crypto import SecretDecryptionError, encrypt_secret, generate_key
from vulnsync.core.logging import configure_logging
from vulnsync.core.persistence.database import shutdown
from vulnsync.core.records import VulnerabilitySource

logger = structlog.get_logger()


async def init_db(database_url: str):
    """Initialize database engine and session factory. Returns engine for cleanup."""
    from vulnsync.core.persistence.database import init_database, create_session_factory
    engine = await init_database(database_url)
    create_session_factory(engine)
    return engine


@click.group()
@click.option("--log-level", default=None, help="Minimum log level (debug, info, warning, error)")
@click.pass_context
async def cli(ctx, log_level: str | None):
    """vulnsync - multi-source vulnerability analysis"""
    ctx.ensure_object(dict)
    config = load_config()
    configure_logging(log_level or config.log_level, json=config.log_json)
    ctx.obj["config"] = config


@cli.command("add-component")
@click.argument("name")
@click.option("--version", "-v", "version", default=None, help="Component version")
@click.option("--group", "-g", default=None, help="Group / namespace")
@click.option("--purl", default=None, help="Package URL, e.g. pkg:npm/lodash@4.17.20")
@click.option("--cpe", default=None, help="CPE 2.3 name")
@click.option("--internal", is_flag=True, help="In-house component (never sent to external sources)")
@click.pass_context
async def add_component_command(
    ctx,
    name: str,
    version: str | None,
    group: str | None,
    purl: str | None,
    cpe: str | None,
    internal: bool,
):
    """Register a component in the inventory.

    Examples:
        vulnsync add-component lodash -v 4.17.20 --purl pkg:npm/lodash@4.17.20
        vulnsync add-component openssl -v 1.1.1 --cpe cpe:2.3:a:openssl:openssl:1.1.1:*:*:*:*:*:*:*
    """
    engine = await init_db(ctx.obj["config"].database_url)

    try:
        from vulnsync.core.persistence.database import get_session
        from vulnsync.core.persistence.store import add_component

        async with get_session() as session:
            component = await add_component(
                session,
                name=name,
                version=version,
                group=group,
                purl=purl,
                cpe=cpe,
                internal=internal,
            )
            component_id = component.id

        click.echo(f"[+] Component registered: {name} {version or ''}".rstrip())
        click.echo(f"[+] ID: {component_id}")

    except Exception as e:
        click.echo(f"[-] Error adding component: {e}")
        ctx.exit(1)
    finally:
        await shutdown(engine)


@cli.command()
@click.pass_context
async def components(ctx):
    """List the component inventory."""
    engine = await init_db(ctx.obj["config"].database_url)

    try:
        from vulnsync.core.persistence.database import get_session
        from vulnsync.core.persistence.store import list_components

        async with get_session() as session:
            inventory = await list_components(session)

        click.echo(f"[+] Components: {len(inventory)}")
        for component in inventory:
            identity = component.purl or component.cpe or "-"
            flag = " (internal)" if component.internal else ""
            click.echo(f"    {component.id}  {component.name} {component.version or ''}  {identity}{flag}")

    finally:
        await shutdown(engine)


@cli.command()
@click.option(
    "--source", "-s", "sources",
    multiple=True,
    type=click.Choice([s.value for s in VulnerabilitySource], case_sensitive=False),
    help="Source to run (repeatable). Default: every enabled source.",
)
@click.option("--component", "-c", "component_ids", multiple=True, help="Component ID (repeatable). Default: full inventory.")
@click.pass_context
async def analyze(ctx, sources: tuple[str, ...], component_ids: tuple[str, ...]):
    """Analyze components against vulnerability sources.

    Each source runs as its own unit of work; sources run concurrently.

    Examples:
        vulnsync analyze
        vulnsync analyze -s NVD -s OSSINDEX
        vulnsync analyze -s NPM -c 3f1c...
    """
    config = ctx.obj["config"]
    engine = await init_db(config.database_url)

    try:
        from vulnsync.engine import AnalysisTrigger, DispatchGate, LogNotificationSink, TriggerConsumer

        selected = [VulnerabilitySource(s.upper()) for s in sources] or list(VulnerabilitySource)
        enabled = [s for s in selected if config.source(s).enabled]
        if not enabled:
            click.echo("[!] No enabled sources. Set VULNSYNC_<SOURCE>_ENABLED=true")
            return

        click.echo(f"[*] Sources: {', '.join(s.value for s in enabled)}")

        consumer = TriggerConsumer(DispatchGate(config, sink=LogNotificationSink()))
        for source in enabled:
            consumer.submit(AnalysisTrigger(source=source, component_ids=tuple(component_ids)))

        try:
            summaries = await consumer.join()
        finally:
            await consumer.stop()

        click.echo("\n" + "=" * 60)
        click.echo("[+] Analysis Complete")
        click.echo("=" * 60)
        for summary in summaries:
            click.echo(
                f"    {summary.source}: analyzed={summary.analyzed} skipped={summary.skipped} "
                f"failed={summary.failed} vulnerabilities={summary.vulnerabilities} "
                f"notifications={summary.notifications}"
            )
        skipped = {s.value for s in enabled} - {summary.source for summary in summaries}
        for source in sorted(skipped):
            click.echo(f"    {source}: skipped (see log)")

    finally:
        await shutdown(engine)


@cli.command()
@click.option("--component", "-c", "component_id", default=None, help="Only vulnerabilities of this component")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
async def vulnerabilities(ctx, component_id: str | None, as_json: bool):
    """List stored vulnerabilities."""
    engine = await init_db(ctx.obj["config"].database_url)

    try:
        from vulnsync.core.persistence.database import get_session
        from vulnsync.core.persistence.store import list_vulnerabilities

        async with get_session() as session:
            stored = await list_vulnerabilities(session, component_id=component_id)

        if as_json:
            click.echo(json.dumps([
                {
                    "source": v.source,
                    "vuln_id": v.vuln_id,
                    "severity": v.severity,
                    "title": v.title,
                    "aliases": v.list_field("aliases"),
                    "references": v.list_field("references"),
                }
                for v in stored
            ], indent=2))
            return

        click.echo(f"[+] Vulnerabilities: {len(stored)}")
        for v in stored:
            click.echo(f"    [{v.severity.upper()}] {v.source} {v.vuln_id}  {v.title or ''}".rstrip())

    finally:
        await shutdown(engine)


@cli.command("generate-key")
async def generate_key_command():
    """Print a new key for VULNSYNC_SECRET_KEY."""
    click.echo(generate_key())


@cli.command("encrypt-secret")
@click.argument("secret")
@click.pass_context
async def encrypt_secret_command(ctx, secret: str):
    """Encrypt a source secret with VULNSYNC_SECRET_KEY.

    Example:
        VULNSYNC_VULNDB_API_SECRET=$(vulnsync encrypt-secret s3cr3t)
    """
    try:
        click.echo(encrypt_secret(secret, ctx.obj["config"].secret_key))
    except SecretDecryptionError as e:
        click.echo(f"[-] {e}")
        ctx.exit(1)


if __name__ == "__main__":
    cli()
