"""pxlink CLI - command line access to a pxGrid controller."""

import asyncio
import json
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from pxlink import __version__
from pxlink.client import PxgridClient
from pxlink.core.domain.models import PxgridError
from pxlink.core.ports.outbound.messaging import BusMessage

console = Console()


def _build_client(obj: dict[str, Any]) -> PxgridClient:
    return PxgridClient.from_options(
        client_name=obj["client"],
        hosts=list(obj["hosts"]),
        cert_file=obj["cert"],
        key_file=obj["key"],
        key_password=obj["key_password"],
        ca_bundle=obj["ca_bundle"],
        secret=obj["secret"],
        port=obj["port"],
        verify_tls=not obj["insecure"],
        timeout=obj["timeout"],
    )


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except PxgridError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="pxlink")
@click.option("--host", "-h", "hosts", multiple=True, required=True, envvar="PXLINK_HOST",
              help="Controller hostname, repeat for failover")
@click.option("--port", "-p", default=8910, type=int, envvar="PXLINK_PORT", help="Controller port")
@click.option("--client", "-c", required=True, envvar="PXLINK_CLIENT", help="Client name")
@click.option("--cert", envvar="PXLINK_CERT", help="Client certificate (PEM)")
@click.option("--key", envvar="PXLINK_KEY", help="Client private key (PEM)")
@click.option("--key-password", envvar="PXLINK_KEY_PASSWORD", default=None, help="Private key password")
@click.option("--ca-bundle", envvar="PXLINK_CA_BUNDLE", help="CA bundle verifying the controller")
@click.option("--secret", envvar="PXLINK_SECRET", default="", help="Registration secret")
@click.option("--insecure", is_flag=True, help="Do not verify the controller certificate")
@click.option("--timeout", default=1.0, type=float, help="Connect timeout per host (seconds)")
@click.pass_context
def main(ctx: click.Context, **options: Any) -> None:
    """pxlink - pxGrid controller client."""
    ctx.ensure_object(dict)
    ctx.obj.update(options)


@main.command()
@click.option("--description", "-d", default="pxgrid-node", help="Account description")
@click.option("--retry-interval", default=60.0, type=float, help="Seconds between attempts while PENDING")
@click.option("--max-retries", default=10, type=int, help="Retries while PENDING")
@click.pass_obj
def activate(obj: dict[str, Any], description: str, retry_interval: float, max_retries: int) -> None:
    """Activate the client account."""

    async def run() -> None:
        client = _build_client(obj)
        try:
            await client.control.activate(description, retry_interval, max_retries)
        finally:
            await client.close()

    _run(run())
    console.print(f"[green]✓[/green] Account [bold]{obj['client']}[/bold] is ENABLED")


@main.command()
@click.argument("service")
@click.pass_obj
def lookup(obj: dict[str, Any], service: str) -> None:
    """Look up the provider of SERVICE."""

    async def run() -> Any:
        client = _build_client(obj)
        try:
            return await client.control.service_lookup(service, max_retries=0)
        finally:
            await client.close()

    descriptor = _run(run())

    table = Table(title=f"Service {descriptor.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("nodeName", descriptor.node_name)
    for key, value in descriptor.properties.items():
        table.add_row(key, str(value))
    console.print(table)


@main.command()
@click.argument("service")
@click.argument("path")
@click.option("--data", "-d", default="{}", help="JSON payload")
@click.option("--unwrap", "-u", default=None, help="Response field holding the payload")
@click.pass_obj
def call(obj: dict[str, Any], service: str, path: str, data: str, unwrap: Optional[str]) -> None:
    """POST to PATH of a SERVICE capability."""
    try:
        payload = json.loads(data)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--data")

    async def run() -> Any:
        client = _build_client(obj)
        try:
            return await client.call(service, path, payload, unwrap=unwrap)
        finally:
            await client.close()

    result = _run(run())
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        sys.exit(1)
    console.print_json(json.dumps(result.data, default=str))


@main.command()
@click.argument("service")
@click.argument("topic_property")
@click.pass_obj
def subscribe(obj: dict[str, Any], service: str, topic_property: str) -> None:
    """Print messages from the TOPIC_PROPERTY topic of SERVICE until interrupted."""

    async def on_message(message: BusMessage) -> None:
        console.print(f"[cyan]{message.destination}[/cyan]")
        console.print_json(json.dumps(message.body, default=str))

    async def run() -> None:
        client = _build_client(obj)
        try:
            bus = await client.connect()
            try:
                await client.subscribe_to_custom(bus, service, topic_property, on_message)
                console.print("[green]✓[/green] Subscribed, waiting for messages (Ctrl+C to stop)")
                await asyncio.Event().wait()
            finally:
                await bus.deactivate()
        finally:
            await client.close()

    try:
        _run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


if __name__ == "__main__":
    main()
