"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import typer

from svcmode.core.config import load_config
from svcmode.core.errors import NotReadyError, SvcModeError
from svcmode.core.model import CommandResult, EventKind, SessionEvent, TestResult
from svcmode.core.session import ServiceModeSession
from svcmode.transports.serial_port import list_ports

app = typer.Typer(help="Service-mode provisioning and testing for devices on USB serial")

T = TypeVar("T")


@dataclass(frozen=True)
class _Options:
    config_path: Path | None = None
    verbose: bool = False


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    ctx.obj = _Options(config_path=config, verbose=verbose)


def _configure_logging(level: str) -> None:
    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _build_session(ctx: typer.Context) -> ServiceModeSession:
    options: _Options = ctx.obj or _Options()
    config = load_config(options.config_path)
    _configure_logging("DEBUG" if options.verbose else config.log_level)
    return ServiceModeSession(config=config)


def _in_service_mode(
    ctx: typer.Context,
    port: str,
    action: Callable[[ServiceModeSession], Awaitable[T]],
) -> T:
    """Connect, enter service mode, run ``action``, and always disconnect."""

    async def runner() -> T:
        session = _build_session(ctx)
        async with session:
            if not await session.connect(port):
                raise NotReadyError(
                    session.state.error_message or f"Device on {port} did not enter service mode"
                )
            return await action(session)

    try:
        return asyncio.run(runner())
    except SvcModeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def _echo_result(result: CommandResult) -> None:
    if not result.ok:
        typer.echo(f"Error: {result.reason or result.outcome.value}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"OK: {result.reason or result.command.cmd}")
    if result.data:
        typer.echo(json.dumps(dict(result.data), indent=2, sort_keys=True))


def _echo_test(result: TestResult) -> None:
    line = f"{result.name}: {result.status.value}"
    if result.message:
        line += f" ({result.message})"
    typer.echo(line)


def _parse_arguments(pairs: list[str]) -> dict[str, str]:
    """Split ``key=value`` pairs; values stay text until the manifest types them."""
    arguments: dict[str, str] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--arg")
        arguments[key] = raw
    return arguments


@app.command("ports")
def ports() -> None:
    """List serial ports that could host a device."""
    try:
        detected = list_ports()
    except SvcModeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not detected:
        typer.echo("No serial ports found")
        return
    for port in detected:
        typer.echo(f"{port.device}  {port.description}")


@app.command("status")
def status(ctx: typer.Context, port: str) -> None:
    """Enter service mode and print the device status."""
    info = _in_service_mode(ctx, port, lambda session: session.get_status())
    if info is None:
        typer.echo("Error: Device did not report its status", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Device: {info.device_type} ({info.mac_address or 'unknown MAC'})")
    typer.echo(f"Firmware: {info.firmware_version}")
    typer.echo(f"Unit: {info.unit_id or '<not provisioned>'}")
    typer.echo(f"Cloud configured: {'yes' if info.cloud_configured else 'no'}")
    wifi = info.wifi_ssid if info.wifi_connected and info.wifi_ssid else "not connected"
    typer.echo(f"WiFi: {wifi}")
    if info.battery_level is not None:
        typer.echo(f"Battery: {info.battery_level}%")


@app.command("manifest")
def manifest(ctx: typer.Context, port: str) -> None:
    """Print the capability manifest the device reports."""
    fetched = _in_service_mode(ctx, port, lambda session: session.get_manifest())
    if fetched is None:
        typer.echo("Error: Device did not return a manifest", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(fetched.to_json(), indent=2))


@app.command("test")
def run_tests(
    ctx: typer.Context,
    port: str,
    names: list[str] | None = typer.Argument(None, help="Tests to run, e.g. wifi rfid"),
    run_all: bool = typer.Option(False, "--all", help="Run every supported test in turn"),
    device_all: bool = typer.Option(
        False, "--device-all", help="Let the firmware run its whole suite in one command"
    ),
    wifi_ssid: str | None = typer.Option(None, "--wifi-ssid"),
    wifi_password: str | None = typer.Option(None, "--wifi-password"),
) -> None:
    """Run device self-tests.

    With no NAMES, or with --all, every test in the device manifest runs.
    """
    wifi_data = {
        key: value
        for key, value in (("ssid", wifi_ssid), ("password", wifi_password))
        if value is not None
    }

    async def action(session: ServiceModeSession) -> bool:
        if device_all:
            result = await session.run_device_test_all(wifi_ssid, wifi_password)
            for name, item in sorted(session.state.test_results.items()):
                if name != "all":
                    _echo_test(item)
            _echo_test(result)
            return result.passed

        if run_all or not names:
            report = await session.test_all({"wifi": wifi_data} if wifi_data else None)
            for item in report.results.values():
                _echo_test(item)
            for name in report.skipped:
                typer.echo(f"{name}: skipped")
            typer.echo(f"{report.passed_count} passed, {report.failed_count} failed")
            if report.aborted:
                typer.echo(f"Stopped early: {report.reason}", err=True)
            return report.passed

        passed = True
        for name in names:
            data = wifi_data if name == "wifi" else None
            result = await session.run_test(name, data or None)
            _echo_test(result)
            passed = passed and result.passed
        return passed

    if not _in_service_mode(ctx, port, action):
        raise typer.Exit(code=1)


@app.command("provision")
def provision(
    ctx: typer.Context,
    port: str,
    unit_id: str,
    cloud_url: str | None = typer.Option(None, "--cloud-url", help="Overrides the config value"),
    cloud_anon_key: str | None = typer.Option(None, "--cloud-anon-key"),
    cloud_device_secret: str | None = typer.Option(None, "--cloud-device-secret"),
) -> None:
    """Write a unit id and cloud credentials to the device."""
    result = _in_service_mode(
        ctx,
        port,
        lambda session: session.provision(
            unit_id,
            cloud_url=cloud_url,
            cloud_anon_key=cloud_anon_key,
            cloud_device_secret=cloud_device_secret,
        ),
    )
    _echo_result(result)


@app.command("reset")
def reset(
    ctx: typer.Context,
    port: str,
    factory: bool = typer.Option(
        False, "--factory", help="Full wipe including the unit id, instead of a customer reset"
    ),
) -> None:
    """Reset the device. It reboots afterwards."""
    if factory:
        result = _in_service_mode(ctx, port, lambda session: session.factory_reset())
    else:
        result = _in_service_mode(ctx, port, lambda session: session.customer_reset())
    _echo_result(result)


@app.command("reboot")
def reboot(ctx: typer.Context, port: str) -> None:
    """Reboot the device."""
    _echo_result(_in_service_mode(ctx, port, lambda session: session.reboot()))


@app.command("command")
def custom_command(
    ctx: typer.Context,
    port: str,
    name: str,
    args: list[str] | None = typer.Option(None, "--arg", help="Parameter as key=value"),
) -> None:
    """Run a custom command declared in the device manifest."""
    arguments = _parse_arguments(args or [])
    result = _in_service_mode(
        ctx, port, lambda session: session.run_custom_command(name, arguments)
    )
    _echo_result(result)


@app.command("monitor")
def monitor(
    ctx: typer.Context,
    port: str,
    duration: float = typer.Option(30.0, "--duration", min=0.0, help="Seconds to listen"),
) -> None:
    """Print raw device output without entering service mode."""

    def echo_line(event: SessionEvent) -> None:
        if event.kind is EventKind.LOG and str(event.payload).startswith("[RX] "):
            typer.echo(str(event.payload)[len("[RX] "):])

    async def runner() -> None:
        session = _build_session(ctx)
        session.add_listener(echo_line)
        async with session:
            await session.connect(port, monitor_only=True)
            await asyncio.sleep(duration)

    try:
        asyncio.run(runner())
    except SvcModeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
