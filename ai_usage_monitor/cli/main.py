"""
CLI interface for AI Usage Monitor.

Provides one-shot quota and cost reports plus the long-running daemon.
"""

import asyncio
import json
import signal
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_usage_monitor.config.loader import (
    DEFAULT_CONFIG_PATH,
    MonitorConfig,
    default_config,
    load_monitor_config,
)
from ai_usage_monitor.core.accountant import CostAccountant, PricingRefreshResult
from ai_usage_monitor.core.cache import CacheEvent, CacheEventKind, UsageCache
from ai_usage_monitor.core.models import AccountId, CostScanResult, RateWindow, UsageSnapshot
from ai_usage_monitor.core.orchestrator import PollingOrchestrator
from ai_usage_monitor.core.retry import RetryScheduler
from ai_usage_monitor.core.watcher import CredentialWatcher
from ai_usage_monitor.logging_config import configure_logging
from ai_usage_monitor.providers import (
    FetchError,
    ProviderRegistry,
    UsageProvider,
    build_scanners,
)

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1


def _load_config(path: Optional[Path]) -> MonitorConfig:
    """Explicit --config, else the default location if present, else defaults."""
    if path is not None:
        return load_monitor_config(str(path))
    default_path = DEFAULT_CONFIG_PATH.expanduser()
    if default_path.exists():
        return load_monitor_config(str(default_path))
    return default_config()


def _config(ctx: typer.Context) -> MonitorConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """AI Usage Monitor CLI."""
    configure_logging(verbose)
    try:
        ctx.obj = {"config": _load_config(config)}
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("AI Usage Monitor - Use --help to see available commands")


# ── status ───────────────────────────────────────────────────────


async def _fetch_one(provider: UsageProvider, timeout: float) -> Tuple[Optional[UsageSnapshot], Optional[str]]:
    if not provider.has_valid_credentials():
        return None, provider.credential_error_hint()
    try:
        snapshot = await asyncio.wait_for(provider.fetch_usage(), timeout=timeout)
    except asyncio.TimeoutError:
        return None, f"{provider.name} usage request timed out"
    except FetchError as e:
        return None, str(e)
    except Exception as e:
        return None, str(e) or e.__class__.__name__
    return snapshot, None


async def _fetch_statuses(
    registry: ProviderRegistry, accounts: List[AccountId], timeout: float
) -> Dict[AccountId, Tuple[Optional[UsageSnapshot], Optional[str]]]:
    results = await asyncio.gather(
        *(_fetch_one(registry.get(account), timeout) for account in accounts)
    )
    return dict(zip(accounts, results))


def _format_percent(fraction: float) -> str:
    return f"{fraction * 100:.0f}%"


def _format_resets(window: RateWindow) -> str:
    if window.resets_at is None:
        return "-"
    return window.resets_at.astimezone().strftime("%Y-%m-%d %H:%M")


def _window_rows(snapshot: UsageSnapshot) -> List[Tuple[str, RateWindow]]:
    rows = [
        (name, window)
        for name, window in (
            ("Session", snapshot.primary),
            ("Weekly", snapshot.secondary),
            ("Model weekly", snapshot.tertiary),
        )
        if window is not None
    ]
    rows.extend((carveout.label, carveout.window) for carveout in snapshot.carveouts)
    return rows


def _window_json(window: RateWindow) -> Dict[str, Any]:
    return {
        "used_fraction": window.used_fraction,
        "window_minutes": window.window_minutes,
        "resets_at": window.resets_at.isoformat() if window.resets_at else None,
        "description": window.description,
    }


def _status_json(account: AccountId, snapshot: Optional[UsageSnapshot], error: Optional[str]) -> Dict[str, Any]:
    if snapshot is None:
        return {"account": account.value, "error": error}
    cost = snapshot.provider_cost
    return {
        "account": account.value,
        "plan": snapshot.identity.plan,
        "windows": {label: _window_json(window) for label, window in _window_rows(snapshot)},
        "max_usage": snapshot.max_usage(),
        "provider_cost": None if cost is None else {
            "used": cost.used,
            "limit": cost.limit,
            "currency": cost.currency_code,
        },
    }


def _display_status(account: AccountId, snapshot: Optional[UsageSnapshot], error: Optional[str]) -> None:
    console.print(f"\n[bold]{account.display_name}[/bold]")
    if snapshot is None:
        console.print(f"[red]Error:[/] {error}")
        console.print(f"[dim]{account.dashboard_url}[/]")
        return

    if snapshot.identity.plan:
        console.print(f"Plan: {snapshot.identity.plan}")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Window")
    table.add_column("Used", justify="right")
    table.add_column("Resets")
    for label, window in _window_rows(snapshot):
        color = "red" if window.used_fraction >= 0.9 else "yellow" if window.used_fraction >= 0.7 else "green"
        table.add_row(label, f"[{color}]{_format_percent(window.used_fraction)}[/]", _format_resets(window))
    console.print(table)

    cost = snapshot.provider_cost
    if cost is not None:
        console.print(
            f"Extra usage: {_format_currency(cost.used)} of {_format_currency(cost.limit)} {cost.currency_code}"
        )


def _selected_accounts(config: MonitorConfig, account: Optional[str]) -> List[AccountId]:
    enabled = config.enabled_accounts()
    if account is None:
        return enabled
    try:
        selected = AccountId(account.lower())
    except ValueError:
        valid_accounts = [a.value for a in AccountId]
        raise ValueError(f"Unknown account '{account}', must be one of: {valid_accounts}")
    if selected not in enabled:
        raise ValueError(f"Account '{account}' is disabled in the configuration")
    return [selected]


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print machine-readable JSON"
    ),
    account: Optional[str] = typer.Option(
        None,
        "--account",
        "-a",
        help="Only show this account (claude or codex)"
    ),
):
    """Fetch and show current quota usage for each enabled account."""
    config = _config(ctx)
    try:
        accounts = _selected_accounts(config, account)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    registry = ProviderRegistry(config)
    results = asyncio.run(
        _fetch_statuses(registry, accounts, config.polling.fetch_timeout_seconds)
    )

    if json_output:
        payload = [_status_json(a, *results[a]) for a in accounts]
        console.print_json(json.dumps(payload))
    else:
        if not accounts:
            console.print("[yellow]No accounts enabled[/]")
        for a in accounts:
            _display_status(a, *results[a])
    sys.exit(EXIT_CODE_OK)


# ── cost ─────────────────────────────────────────────────────────


def _build_accountant(config: MonitorConfig) -> CostAccountant:
    return CostAccountant(
        build_scanners(config),
        pricing_cache_path=config.cost.pricing_cache_path,
        pricing_url=config.cost.pricing_url,
    )


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _cost_json(account: AccountId, result: CostScanResult, since: date) -> Dict[str, Any]:
    cost = result.cost
    return {
        "account": account.value,
        "today_cost": cost.today_cost,
        "last_30_days_cost": cost.monthly_cost,
        "currency": cost.currency,
        "is_estimate": cost.is_estimate,
        "had_scan_error": cost.had_scan_error,
        "last_30_days_tokens": result.tokens.last_30_days_tokens,
        "daily": [
            {"date": entry.date.isoformat(), "model": entry.model, "cost": entry.cost}
            for entry in cost.daily_breakdown
            if entry.date >= since
        ],
    }


def _display_cost(account: AccountId, result: CostScanResult, since: date) -> None:
    cost = result.cost
    console.print(f"\n[bold]{account.display_name}[/bold]")
    console.print(f"Today: {_format_currency(cost.today_cost)}")
    console.print(f"Last 30 days: {_format_currency(cost.monthly_cost)}")
    if result.tokens.last_30_days_tokens:
        console.print(f"Tokens (30 days): {result.tokens.last_30_days_tokens:,}")
    if cost.is_estimate:
        console.print("[yellow]Includes estimated pricing[/]")
    if cost.had_scan_error:
        console.print("[yellow]Log scan failed; showing last known values[/]")

    rows = [entry for entry in cost.daily_breakdown if entry.date >= since]
    if not rows:
        console.print("[dim]No usage in the selected period.[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Date")
    table.add_column("Model")
    table.add_column("Cost", justify="right")
    for entry in rows:
        table.add_row(entry.date.isoformat(), entry.model, _format_currency(entry.cost))
    console.print(table)


@app.command()
def cost(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print machine-readable JSON"
    ),
    days: int = typer.Option(
        7,
        "--days",
        "-d",
        min=1,
        max=30,
        help="Days of daily breakdown to show"
    ),
):
    """Estimate spend from local activity logs."""
    config = _config(ctx)
    accountant = _build_accountant(config)
    asyncio.run(accountant.refresh_pricing())

    today = date.today()
    since = today - timedelta(days=days - 1)
    results = accountant.scan_all(today)

    if json_output:
        payload = [_cost_json(a, r, since) for a, r in results.items()]
        console.print_json(json.dumps(payload))
    else:
        if not results:
            console.print("[yellow]No accounts enabled[/]")
        for a, r in results.items():
            _display_cost(a, r, since)
    sys.exit(EXIT_CODE_OK)


@app.command("refresh-pricing")
def refresh_pricing(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Refresh even if the cached prices are fresh"
    ),
):
    """Update the cached model pricing table."""
    accountant = _build_accountant(_config(ctx))
    result = asyncio.run(accountant.refresh_pricing(force=force))

    if result == PricingRefreshResult.REFRESHED:
        console.print(f"[green]✓[/] Refreshed pricing ({len(accountant.catalog)} models)")
        sys.exit(EXIT_CODE_OK)
    if result == PricingRefreshResult.SKIPPED:
        console.print("Skipped: pricing cache is fresh (use --force to refresh)")
        sys.exit(EXIT_CODE_OK)
    console.print("[red]Failed to refresh pricing[/]; using cached/default prices")
    sys.exit(EXIT_CODE_FAIL)


# ── daemon ───────────────────────────────────────────────────────


def _describe_event(cache: UsageCache, event: CacheEvent) -> Optional[str]:
    name = event.account.display_name
    if event.kind == CacheEventKind.SNAPSHOT_UPDATED:
        snapshot = cache.get_snapshot(event.account)
        if snapshot is None:
            return None
        return f"{name}: {_format_percent(snapshot.max_usage())} used"
    if event.kind == CacheEventKind.ERROR_OCCURRED:
        return f"[red]{name}: {event.message}[/]"
    if event.kind == CacheEventKind.ERROR_CLEARED:
        return f"[green]{name}: recovered[/]"
    cost = cache.get_cost(event.account)
    if cost is None:
        return None
    suffix = " (estimate)" if cost.is_estimate else ""
    return (
        f"{name}: today {_format_currency(cost.today_cost)}, "
        f"30 days {_format_currency(cost.monthly_cost)}{suffix}"
    )


async def _print_events(cache: UsageCache) -> None:
    subscription = cache.subscribe()
    try:
        while True:
            event = await subscription.get()
            line = _describe_event(cache, event)
            if line:
                console.print(line)
    finally:
        cache.unsubscribe(subscription)


def _notify(account: AccountId, usage: float) -> None:
    console.print(
        f"[bold red]⚠ {account.display_name} usage at {_format_percent(usage)}[/]"
    )


async def _run_daemon(config: MonitorConfig) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    cache = UsageCache()
    registry = ProviderRegistry(config)
    polling = config.polling

    async with CredentialWatcher(registry.credential_paths()) as watcher:
        orchestrator = PollingOrchestrator(
            registry,
            cache,
            watcher=watcher,
            tick=timedelta(seconds=polling.tick_seconds),
            fetch_timeout=timedelta(seconds=polling.fetch_timeout_seconds),
            notification_threshold=config.notifications.threshold,
            notifier=_notify if config.notifications.enabled else None,
            retry_factory=lambda: RetryScheduler(
                base_delay=timedelta(seconds=polling.base_delay_seconds),
                max_delay=timedelta(seconds=polling.max_delay_seconds),
            ),
        )
        accountant = _build_accountant(config)
        printer = asyncio.create_task(_print_events(cache))
        try:
            await asyncio.gather(
                orchestrator.run(stop_event),
                accountant.run(
                    cache,
                    stop_event,
                    scan_interval=timedelta(seconds=config.cost.scan_interval_seconds),
                    pricing_retry_interval=timedelta(seconds=config.cost.pricing_retry_seconds),
                ),
            )
        finally:
            printer.cancel()
            await asyncio.gather(printer, return_exceptions=True)


@app.command()
def daemon(ctx: typer.Context):
    """Monitor quotas and costs until interrupted."""
    config = _config(ctx)
    console.print("[green]✓[/] AI Usage Monitor running (Ctrl+C to stop)")
    try:
        asyncio.run(_run_daemon(config))
    except KeyboardInterrupt:
        pass
    console.print("Stopped")
    sys.exit(EXIT_CODE_OK)


if __name__ == "__main__":
    app()
