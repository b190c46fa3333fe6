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

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from port_register.allocator import (
    DEFAULT_SUGGEST_MAX,
    DEFAULT_SUGGEST_MIN,
    suggest_port,
)
from port_register.config import PortRegisterCfg
from port_register.errors import ScanUnavailableError
from port_register.models import (
    AnnotatedRegistration,
    PortCheck,
    Registration,
    SocketBinding,
    SystemPort,
)
from port_register.providers import NetworkStateProvider, get_provider
from port_register.reconcile import annotate, check_port, system_view
from port_register.registry import PortRegistry
from port_register.store import JsonFileStore
from port_register.utils import coerce_port

__all__ = ["PortRegisterService"]

logger = logging.getLogger(__name__)


class PortRegisterService:
    """Answers port register queries by joining the registry with the OS.

    Each query captures the OS port table at most once and resolves
    process names only when that scan succeeded.

    Args:
        registry (PortRegistry): Lease registry.
        provider (NetworkStateProvider): Source of OS socket state.
        suggest_range (Tuple[int, int]): Default ``(min, max)`` for
            :meth:`suggest`.
    """

    def __init__(
        self,
        registry: PortRegistry,
        provider: NetworkStateProvider,
        suggest_range: Tuple[int, int] = (
            DEFAULT_SUGGEST_MIN,
            DEFAULT_SUGGEST_MAX,
        ),
    ):
        self.registry = registry
        self.provider = provider
        self.suggest_range = suggest_range

    @classmethod
    def from_config(cls, cfg: PortRegisterCfg) -> "PortRegisterService":
        registry = PortRegistry(
            JsonFileStore(cfg.data_file),
            default_ttl_minutes=cfg.default_ttl_minutes,
        )
        provider = get_provider(cfg.provider, timeout=cfg.scan_timeout)
        return cls(
            registry,
            provider,
            suggest_range=(cfg.suggest_min, cfg.suggest_max),
        )

    async def _bindings(self) -> Optional[Dict[int, SocketBinding]]:
        try:
            return await self.provider.scan_sockets()
        except ScanUnavailableError:
            return None

    async def _names(
        self, bindings: Optional[Mapping[int, SocketBinding]]
    ) -> Dict[int, str]:
        if bindings is None:
            return {}
        return await self.provider.process_names()

    async def list_ports(self) -> List[AnnotatedRegistration]:
        registrations = await self.registry.snapshot()
        bindings = await self._bindings()
        names = await self._names(bindings)
        return annotate(registrations, bindings, names)

    async def system_ports(self) -> List[SystemPort]:
        """List OS-bound ports with their registrations.

        Raises:
            ScanUnavailableError: If the port table cannot be read.
        """
        bindings = await self.provider.scan_sockets()
        names = await self.provider.process_names()
        registrations = await self.registry.snapshot()
        return system_view(bindings, names, registrations)

    async def check(self, port: Any) -> PortCheck:
        port = coerce_port(port)
        registrations = await self.registry.snapshot()
        bindings = await self._bindings()
        return check_port(port, registrations, bindings)

    async def register(
        self, port: Any, agent: Any, reason: Any, ttl_minutes: Any = None
    ) -> Registration:
        return await self.registry.register(port, agent, reason, ttl_minutes)

    async def heartbeat(self, port: Any, agent: Any = None) -> Registration:
        return await self.registry.heartbeat(port, agent)

    async def release(self, port: Any, agent: Any = None) -> Registration:
        return await self.registry.release(port, agent)

    async def clear_all(self) -> int:
        return await self.registry.clear_all()

    async def suggest(
        self, min_port: Optional[int] = None, max_port: Optional[int] = None
    ) -> Tuple[int, bool]:
        """Suggest the lowest free port.

        Returns:
            Tuple[int, bool]: The port and whether the OS port table was
            consulted. When it was not, only registrations were checked.

        Raises:
            PortValidationError: If the range is invalid.
            PortNotFoundError: If no port in the range is free.
        """
        if min_port is None:
            min_port = self.suggest_range[0]
        if max_port is None:
            max_port = self.suggest_range[1]
        registrations = await self.registry.snapshot()
        bindings = await self._bindings()
        if bindings is None:
            logger.warning(
                "Suggesting a port without OS state, only registrations "
                "are considered"
            )
        port = suggest_port(min_port, max_port, registrations, bindings)
        return port, bindings is not None
