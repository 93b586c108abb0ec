from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

import svcmode.api as api
from conftest import FakeDevice


def test_public_names_are_importable() -> None:
    for name in api.__all__:
        assert hasattr(api, name), name


def test_create_session_reads_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("SVCMODE_CLOUD_URL", raising=False)
    path = tmp_path / "station.yaml"
    path.write_text(
        "cloud_url: https://cloud.example.com\ntimeouts:\n  entry_window: 0.5\n  entry_retry_interval: 0.01\n",
        encoding="utf-8",
    )
    device = FakeDevice()

    session = api.create_session(config_path=path, transport=device)

    assert isinstance(session, api.ServiceModeSession)
    assert session.config.cloud_url == "https://cloud.example.com"
    assert session.timeouts.entry_window == 0.5
    assert session.transport is device


def test_snapshot_after_connect(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    device = FakeDevice()

    async def scenario() -> api.DeviceSnapshot:
        async with api.create_session(transport=device) as session:
            await session.connect("/dev/ttyUSB0")
            return api.snapshot(session)

    snap = asyncio.run(scenario())

    assert snap.port == "/dev/ttyUSB0"
    assert snap.phase is api.Phase.IN_SERVICE_MODE
    assert snap.device_info.unit_id == "SV-HUB-000042"
    assert snap.manifest.supports_test("wifi")


def test_create_session_defaults_to_serial(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    session = api.create_session()
    assert isinstance(session.transport, api.SerialTransport)
    assert session.transport.baudrate == 115200
