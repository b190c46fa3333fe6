# Project RoboOrchard
#
# Copyright (c) 2024-2025 Horizon Robotics. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied. See the License for the specific language governing
# permissions and limitations under the License.

from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from port_register.config import PortRegisterCfg
from port_register.errors import ScanUnavailableError
from port_register.models import SocketBinding
from port_register.providers import NetworkStateProvider
from port_register.registry import PortRegistry
from port_register.server import create_app
from port_register.service import PortRegisterService
from port_register.store import MemoryStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch millisecond clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float = 0, ms: int = 0):
        self.now += int(minutes * 60 * 1000) + ms


class FakeProvider(NetworkStateProvider):
    """Deterministic network state provider.

    Set ``bindings`` to None to simulate an unreadable port table.
    """

    def __init__(self):
        super().__init__(timeout=1)
        self.bindings: Optional[Dict[int, SocketBinding]] = {}
        self.names: Dict[int, str] = {}
        self.scan_calls = 0
        self.names_calls = 0

    def bind(self, port: int, pid: int = 100, proto: str = "TCP", name=None):
        state = "LISTENING" if proto == "TCP" else "UDP"
        self.bindings[port] = SocketBinding(
            port=port, pid=pid, proto=proto, state=state
        )
        if name is not None:
            self.names[pid] = name

    async def scan_sockets(self):
        self.scan_calls += 1
        if self.bindings is None:
            raise ScanUnavailableError("Could not run netstat")
        return dict(self.bindings)

    async def process_names(self):
        self.names_calls += 1
        return dict(self.names)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(store: MemoryStore, clock: FakeClock) -> PortRegistry:
    return PortRegistry(store, default_ttl_minutes=30, clock=clock)


@pytest.fixture
def service(registry: PortRegistry, provider: FakeProvider):
    return PortRegisterService(registry, provider)


@pytest.fixture
def client(service: PortRegisterService) -> TestClient:
    """Provides a FastAPI TestClient backed by the fake provider."""
    app = create_app(service=service, cfg=PortRegisterCfg())
    with TestClient(app) as test_client:
        yield test_client
