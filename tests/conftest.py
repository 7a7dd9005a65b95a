"""Shared fixtures for deliver tests."""

import asyncio

import pytest

from deliver.config import DEFAULTS, resolve


class FakeTransport:
    """Stands in for SSH or the local shell, recording every call."""

    def __init__(self, failing=(), exit_status=1, errors=None, delays=None, output=()):
        self.failing = set(failing)
        self.exit_status = exit_status
        self.errors = errors or {}
        self.delays = delays or {}
        self.output = list(output)
        self.calls = []
        self.finished = []

    async def run(self, command, host, on_line, on_connected=None):
        address = host.address if host is not None else None
        self.calls.append((address, command))
        if address in self.errors:
            raise self.errors[address]
        if on_connected:
            on_connected()
        await asyncio.sleep(self.delays.get(address, 0))
        for line in self.output:
            on_line(line)
        self.finished.append(address)
        return self.exit_status if address in self.failing else 0


def make_config(mode="compact", **values):
    file_config = {"app": "shop", "hosts": "a,b , c", "user": "deploy"}
    file_config.update(values)
    return resolve(DEFAULTS, file_config, {"mode": mode})


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def project(tmp_path):
    """A project directory with a config file and a local strategies dir."""
    deliver_dir = tmp_path / ".deliver"
    (deliver_dir / "strategies").mkdir(parents=True)
    (deliver_dir / "config.yml").write_text(
        "app: shop\n"
        "hosts: a, b, c\n"
        "user: deploy\n"
        "strategy: local-test\n"
    )
    (deliver_dir / "strategies" / "local-test.yml").write_text(
        "description: Strategy used by the CLI tests\n"
        "steps:\n"
        "  - name: build\n"
        "    target: local\n"
        "    run: echo building {app}\n"
        "  - name: restart\n"
        "    target: hosts\n"
        "    run: restart {app} on {address}\n"
    )
    return tmp_path
