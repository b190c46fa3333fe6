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

import asyncio
import logging
from typing import Any, Callable, Iterable, List

from port_register.errors import (
    AgentMismatchError,
    PortConflictError,
    PortNotFoundError,
    PortValidationError,
)
from port_register.models import Registration
from port_register.store import RegistryStore
from port_register.utils import coerce_int, coerce_port, ms_to_iso, now_ms

__all__ = ["DEFAULT_TTL_MINUTES", "prune", "dedupe", "PortRegistry"]

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30
MINUTE_MS = 60 * 1000


def prune(
    registrations: Iterable[Registration], now: int
) -> List[Registration]:
    """Drop registrations whose expiry is at or before ``now``.

    Args:
        registrations (Iterable[Registration]): Registrations to filter.
        now (int): Reference time as epoch milliseconds.

    Returns:
        List[Registration]: The live registrations, in their original
        order. Records without an expiry are always kept.
    """
    return [
        r for r in registrations if r.expires_at is None or r.expires_at > now
    ]


def dedupe(registrations: Iterable[Registration]) -> List[Registration]:
    """Keep only the first registration of each port, in order."""
    seen = set()
    unique = []
    for r in registrations:
        if r.port not in seen:
            seen.add(r.port)
            unique.append(r)
    return unique


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise PortValidationError(f"Missing required field: {field}")
    return value.strip()


def _find(registrations: List[Registration], port: int) -> int:
    for idx, r in enumerate(registrations):
        if r.port == port:
            return idx
    return -1


class PortRegistry:
    """Registration lifecycle on top of a :class:`RegistryStore`.

    Every operation loads the store, prunes expired records, applies its
    transition and saves, all while holding a single lock, so concurrent
    requests inside this process never overwrite each other's changes.

    Args:
        store (RegistryStore): Persistence backend.
        default_ttl_minutes (int): TTL applied on register when none is
            given, and on every heartbeat.
        clock (Callable[[], int]): Returns the current epoch milliseconds.
    """

    def __init__(
        self,
        store: RegistryStore,
        default_ttl_minutes: int = DEFAULT_TTL_MINUTES,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.default_ttl_ms = default_ttl_minutes * MINUTE_MS
        self.clock = clock
        self._lock = asyncio.Lock()

    async def _load_pruned(self) -> List[Registration]:
        registrations = await self.store.load()
        live = dedupe(prune(registrations, self.clock()))
        if len(live) != len(registrations):
            logger.info(
                "Dropped %d expired or duplicate registration(s)",
                len(registrations) - len(live),
            )
            await self.store.save(live)
        return live

    async def snapshot(self) -> List[Registration]:
        """Return the live registrations, persisting the pruned set."""
        async with self._lock:
            return await self._load_pruned()

    async def register(
        self,
        port: Any,
        agent: Any,
        reason: Any,
        ttl_minutes: Any = None,
    ) -> Registration:
        """Claim ``port`` for ``agent``.

        Raises:
            PortValidationError: If the port is out of range, the agent or
                reason is blank, or the TTL is not a positive integer.
            PortConflictError: If another live registration holds the
                port, whichever agent owns it.
        """
        port = coerce_port(port)
        agent = _require_text(agent, "agent")
        reason = _require_text(reason, "reason")
        if ttl_minutes is None:
            ttl_ms = self.default_ttl_ms
        else:
            minutes = coerce_int(ttl_minutes)
            if minutes is None or minutes <= 0:
                raise PortValidationError(
                    "ttlMinutes must be a positive integer"
                )
            ttl_ms = minutes * MINUTE_MS

        async with self._lock:
            registrations = await self._load_pruned()
            idx = _find(registrations, port)
            if idx >= 0:
                raise PortConflictError(
                    f"Port {port} is already registered",
                    registeredBy=registrations[idx].to_json_dict(),
                )

            now = self.clock()
            registration = Registration(
                port=port,
                agent=agent,
                reason=reason,
                registered_at=ms_to_iso(now),
                expires_at=now + ttl_ms,
                id=f"{port}-{now}",
            )
            registrations.append(registration)
            await self.store.save(registrations)

        logger.info("Port %d registered by %r: %s", port, agent, reason)
        return registration

    def _owned(
        self,
        registrations: List[Registration],
        port: int,
        agent: Any,
        verb: str,
    ) -> int:
        idx = _find(registrations, port)
        if idx < 0:
            raise PortNotFoundError(f"Port {port} is not registered")
        if agent and registrations[idx].agent != agent:
            raise AgentMismatchError(
                f"Agent mismatch, cannot {verb} another agent's port"
            )
        return idx

    async def heartbeat(self, port: Any, agent: Any = None) -> Registration:
        """Extend the expiry of a live registration by the default TTL.

        Raises:
            PortNotFoundError: If no live registration holds the port.
            AgentMismatchError: If ``agent`` is given and is not the owner.
        """
        port = coerce_port(port)
        async with self._lock:
            registrations = await self._load_pruned()
            idx = self._owned(registrations, port, agent, "refresh")
            now = self.clock()
            refreshed = registrations[idx].model_copy(
                update={
                    "expires_at": now + self.default_ttl_ms,
                    "last_heartbeat": ms_to_iso(now),
                }
            )
            registrations[idx] = refreshed
            await self.store.save(registrations)

        logger.debug("Heartbeat for port %d from %r", port, refreshed.agent)
        return refreshed

    async def release(self, port: Any, agent: Any = None) -> Registration:
        """Remove a live registration and return it.

        Raises:
            PortNotFoundError: If no live registration holds the port.
            AgentMismatchError: If ``agent`` is given and is not the owner.
        """
        port = coerce_port(port)
        async with self._lock:
            registrations = await self._load_pruned()
            idx = self._owned(registrations, port, agent, "release")
            released = registrations.pop(idx)
            await self.store.save(registrations)

        logger.info("Port %d released by %r", port, released.agent)
        return released

    async def clear_all(self) -> int:
        """Drop every registration without ownership checks.

        Returns:
            int: Number of live registrations that were dropped.
        """
        async with self._lock:
            registrations = await self._load_pruned()
            await self.store.save([])

        logger.warning("Cleared %d registration(s)", len(registrations))
        return len(registrations)
