"""Shared test fixtures for the Syncthing status core."""

import asyncio
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

import syncthing_api
import syncthing_items
from syncthing_config import Config
from syncthing_items import ItemCollection
from syncthing_utils import Signal


CONFIG_XML = """<configuration version="37">
    <folder id="abcd-1234" label="Documents" path="/home/user/Documents" type="sendreceive">
        <device id="HOST"></device>
    </folder>
    <gui enabled="true" tls="{tls}" debugging="false">
        <address>{address}</address>
        <{key_tag}>{api_key}</{key_tag}>
        <theme>default</theme>
    </gui>
</configuration>
"""


def write_config(directory: Path, tls: str = "true", address: str = "127.0.0.1:8384",
                 api_key: str = "ABC123", key_tag: str = "apikey") -> Path:
    """Write a daemon config.xml into directory/syncthing/ and return its path."""
    target = directory / "syncthing" / "config.xml"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(CONFIG_XML.format(tls=tls, address=address, api_key=api_key, key_tag=key_tag))
    return target


def make_config(tmp_path: Path, executable: Optional[str] = None) -> Config:
    """Config rooted in tmp_path, with a daemon binary that does not exist."""
    return Config(
        executable=executable or str(tmp_path / "no-syncthing"),
        state_dir=tmp_path / "state",
        config_dir=tmp_path / "config",
    )


def fake_daemon(directory: Path, config_file: Optional[Path] = None, hang: bool = False) -> str:
    """Shell script standing in for `syncthing --paths`, returns its path."""
    script = directory / "syncthing"
    lines = ["#!/bin/sh"]
    if hang:
        lines.append("exec sleep 5")
    if config_file is not None:
        lines += ["cat <<'EOF'", "Configuration file:", "\t" + str(config_file), "", "GUI override directory:",
                  "\t" + str(directory / "gui"), "EOF"]
    script.write_text("\n".join(lines) + "\n")
    script.chmod(0o755)
    return str(script)



class FakeManager:
    """The parts of the manager that items talk to."""

    def __init__(self):
        self.devices = ItemCollection()
        self.device_added = Signal("device_added")
        self.devices.item_added.connect(lambda collection, device: self.device_added.emit(self, device))
        self.rescan = MagicMock()
        self.pause = MagicMock()
        self.resume = MagicMock()


@pytest.fixture(autouse=True)
def fast_timers(monkeypatch):
    """Shrink debounce and retry delays so tests run quickly."""
    monkeypatch.setattr(syncthing_items, "STATE_DEBOUNCE_MS", 10)
    monkeypatch.setattr(syncthing_items, "DEVICE_STATE_DEBOUNCE_MS", 20)
    monkeypatch.setattr(syncthing_api, "HTTP_RETRY_MS", 10)
    monkeypatch.setattr(syncthing_api, "EVENTS_REARM_MS", 10)


@pytest.fixture
def settle():
    """Let pending timers fire."""
    async def _settle(delay: float = 0.1):
        await asyncio.sleep(delay)
    return _settle


@pytest.fixture
def fake_manager() -> FakeManager:
    return FakeManager()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """A resolvable config: https://127.0.0.1:8384 with key ABC123."""
    write_config(tmp_path / "state")
    return make_config(tmp_path)


@pytest.fixture
def missing_config(tmp_path: Path) -> Config:
    """A config with no file anywhere, rooted apart from the config fixture."""
    return make_config(tmp_path / "missing")
