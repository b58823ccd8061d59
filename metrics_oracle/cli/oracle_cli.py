"""
Metrics Oracle CLI

Command-line interface for the oracle:
- Resolve TVL, volume or unique-user metrics for a protocol
- List the known protocol descriptors
"""

import asyncio
import json
import time
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..config.loader import ConfigError, load_config
from ..config.protocols import ProtocolRegistry
from ..core.types import ConsensusResult, MetricKind, MetricRequest, Recommendation, TimeWindow
from ..monitoring.observability import configure_logging
from ..oracle import MetricsOracle

console = Console()

RECOMMENDATION_STYLES = {
    Recommendation.RESOLVE: "green",
    Recommendation.RESOLVE_FLAGGED: "yellow",
    Recommendation.DELAY: "magenta",
    Recommendation.CANCEL: "red",
}


def format_value(kind: MetricKind, value: float) -> str:
    if kind == MetricKind.USERS:
        return f"{value:,.0f}"
    return f"${value:,.2f}"


def display_result(result: ConsensusResult, show_json: bool = False):
    """Display a consensus result"""
    if show_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    style = RECOMMENDATION_STYLES[result.recommendation]
    table = Table(title=f"{result.protocol_id} {result.kind.value}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Value", format_value(result.kind, result.value))
    if result.interval:
        low, high = result.interval
        table.add_row("95% interval", f"{format_value(result.kind, low)} - {format_value(result.kind, high)}")
    table.add_row("Confidence", f"{result.confidence:.3f}")
    table.add_row("Recommendation", f"[{style}]{result.recommendation.value}[/{style}]")
    table.add_row("State", result.state.value)
    table.add_row("Flags", ", ".join(f.value for f in result.flags) or "-")
    table.add_row("Measurements", f"{result.measurements_used}/{result.measurements_taken}")
    for name, score in result.scores.as_dict().items():
        table.add_row(name, f"{score:.3f}")
    console.print(table)


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Configuration file (YAML or JSON)')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx, config_path: Optional[str], log_level: Optional[str]):
    """On-chain metrics oracle for Solana protocols"""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))
    if log_level:
        config.log_level = log_level
    configure_logging(config.log_level, config.log_json)
    ctx.obj = {'config': config}


@cli.command()
@click.option('--protocol', '-p', required=True, help='Protocol id (see `protocols`)')
@click.option('--metric', '-m', type=click.Choice([k.value for k in MetricKind]), default='tvl')
@click.option('--window-hours', type=float, default=24.0, help='Trailing window for volume/users')
@click.option('--samples', type=int, default=None, help='Override the number of consensus samples')
@click.option('--spacing', type=float, default=None, help='Override seconds between samples')
@click.option('--deadline', type=float, default=None, help='Seconds until the request deadline')
@click.option('--json', 'show_json', is_flag=True, help='Output JSON')
@click.pass_context
def resolve(ctx, protocol, metric, window_hours, samples, spacing, deadline, show_json):
    """Resolve one metric for a protocol"""
    config = ctx.obj['config']
    if samples is not None:
        config.consensus.samples = samples
    if spacing is not None:
        config.consensus.spacing = spacing

    kind = MetricKind(metric)
    now = time.time()
    request = MetricRequest(
        protocol_id=protocol,
        kind=kind,
        window=TimeWindow.trailing(window_hours * 3600, now) if kind != MetricKind.TVL else None,
        target_time=now if kind == MetricKind.TVL else None,
        deadline=now + deadline if deadline else None,
    )

    async def run():
        async with MetricsOracle(config) as oracle:
            return await oracle.resolve(request)

    display_result(asyncio.run(run()), show_json)


@cli.command()
@click.option('--json', 'show_json', is_flag=True, help='Output JSON')
@click.pass_context
def protocols(ctx, show_json):
    """List known protocols"""
    registry = ProtocolRegistry(ctx.obj['config'].protocols)
    descriptors = registry.all()
    if show_json:
        console.print_json(json.dumps([
            {
                'id': d.protocol_id,
                'name': d.name,
                'program_id': d.program_id,
                'authority': d.authority,
            }
            for d in descriptors
        ]))
        return

    table = Table(title="Protocols")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Program")
    table.add_column("Discovery", style="dim")
    for d in descriptors:
        strategies = []
        if d.vaults or d.vault_seeds:
            strategies.append("seeds")
        if d.authority:
            strategies.append("history")
        if d.state_account_size and d.vault_offsets:
            strategies.append("scan")
        table.add_row(d.protocol_id, d.name, d.program_id, ", ".join(strategies) or "-")
    console.print(table)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
