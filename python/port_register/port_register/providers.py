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

"""Readers for the OS port table and process list.

Each provider runs platform utilities and normalizes their tabular text
output into the same shapes: ``{port: SocketBinding}`` for bound sockets
and ``{pid: name}`` for processes. Parsers are plain functions so they
can be exercised without running any command.
"""

import asyncio
import logging
import os
import re
import socket
import sys
from abc import ABCMeta, abstractmethod
from typing import Dict, Iterable, Literal, Sequence, Tuple

import psutil

from port_register.errors import ScanUnavailableError
from port_register.models import (
    LISTENING_STATE,
    MAX_PORT,
    MIN_PORT,
    UDP_STATE,
    SocketBinding,
)

__all__ = [
    "DEFAULT_SCAN_TIMEOUT",
    "ProviderName",
    "CommandError",
    "run_command",
    "parse_netstat",
    "parse_tasklist",
    "parse_ss",
    "parse_lsof",
    "parse_ps",
    "NetworkStateProvider",
    "CommandProvider",
    "NetstatProvider",
    "SsProvider",
    "LsofProvider",
    "PsutilProvider",
    "get_provider",
]

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 8.0

ProviderName = Literal["auto", "netstat", "ss", "lsof", "psutil"]

BindingMap = Dict[int, SocketBinding]

# `netstat -ano` on Windows, e.g.
#   TCP    0.0.0.0:135        0.0.0.0:0     LISTENING     1234
#   TCP    [::]:445           [::]:0        LISTENING     4
#   UDP    0.0.0.0:5353       *:*                         5678
NETSTAT_ROW_RE = re.compile(
    r"^\s*(?P<proto>TCP|UDP)\s+"
    r"(?:[\d.]*|\*|\[[^\]]*\]):(?P<port>\d+)\s+"
    r"\S+\s+"
    r"(?:(?P<state>[A-Z_]+)\s+)?"
    r"(?P<pid>\d+)\s*$"
)

# `tasklist /FO CSV /NH`: "image.exe","PID","Session","N","Mem"
TASKLIST_ROW_RE = re.compile(r'^"(?P<name>[^"]+)","(?P<pid>\d+)"')

# `ps -o pid=,comm=`: right aligned pid, then the command
PS_ROW_RE = re.compile(r"^\s*(?P<pid>\d+)\s+(?P<name>.+?)\s*$")

SS_PID_RE = re.compile(r"pid=(\d+)")

# `lsof -nP`: COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME [(STATE)]
LSOF_ROW_RE = re.compile(
    r"^\S+\s+(?P<pid>\d+)\s+.*?\s(?P<proto>TCP|UDP)\s+"
    r"(?P<name>\S+)(?:\s+\((?P<state>[A-Z_]+)\))?\s*$"
)


class CommandError(Exception):
    """Exception raised when a utility cannot be run or exits non-zero."""


def _local_port(address: str) -> int | None:
    """Extract the port of ``host:port`` style addresses.

    Handles ``0.0.0.0:80``, ``*:80``, ``[::1]:80`` and ``lo%eth0:80``.
    Returns None if there is no numeric port.
    """
    _, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return None
    return int(port)


def _add_binding(
    bindings: BindingMap,
    port: int | None,
    pid: int | None,
    proto: str,
    state: str,
) -> None:
    if port is None or port < MIN_PORT or port > MAX_PORT:
        return
    if port in bindings:
        return
    bindings[port] = SocketBinding(
        port=port, pid=pid, proto=proto, state=state
    )


def parse_netstat(output: str) -> BindingMap:
    """Parse Windows ``netstat -ano`` output.

    Only listening TCP sockets and bound UDP sockets are kept, outbound
    connections are skipped. The first row of a port wins, which folds
    the IPv4 and IPv6 rows of dual-stack listeners into one.

    Args:
        output (str): Raw command output.

    Returns:
        Dict[int, SocketBinding]: Bound sockets keyed by port.
    """
    bindings: BindingMap = {}
    for line in output.splitlines():
        m = NETSTAT_ROW_RE.match(line)
        if not m:
            continue
        proto = m.group("proto")
        state = m.group("state")
        if proto == "TCP":
            if state != LISTENING_STATE:
                continue
        else:
            state = UDP_STATE
        _add_binding(
            bindings, int(m.group("port")), int(m.group("pid")), proto, state
        )
    return bindings


def parse_ss(output: str) -> BindingMap:
    """Parse Linux ``ss -Hlntup`` output.

    Rows look like ``tcp LISTEN 0 128 0.0.0.0:22 0.0.0.0:* users:((...))``.
    The process column is only present when the caller may see the owner,
    otherwise the pid stays unknown.
    """
    bindings: BindingMap = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 5:
            continue
        netid, state, local = fields[0].lower(), fields[1].upper(), fields[4]
        if netid == "tcp":
            if state != "LISTEN":
                continue
            proto, state = "TCP", LISTENING_STATE
        elif netid == "udp":
            proto, state = "UDP", UDP_STATE
        else:
            continue
        pid_match = SS_PID_RE.search(line)
        pid = int(pid_match.group(1)) if pid_match else None
        _add_binding(bindings, _local_port(local), pid, proto, state)
    return bindings


def parse_lsof(output: str) -> BindingMap:
    """Parse ``lsof -nP -iTCP -sTCP:LISTEN -iUDP`` output (macOS, BSD)."""
    bindings: BindingMap = {}
    for line in output.splitlines():
        m = LSOF_ROW_RE.match(line)
        if not m:
            continue
        proto = m.group("proto")
        if proto == "TCP":
            if m.group("state") != "LISTEN":
                continue
            state = LISTENING_STATE
        else:
            state = UDP_STATE
        local = m.group("name").split("->", 1)[0]
        _add_binding(
            bindings, _local_port(local), int(m.group("pid")), proto, state
        )
    return bindings


def _parse_names(output: str, pattern: re.Pattern) -> Dict[int, str]:
    names: Dict[int, str] = {}
    for line in output.splitlines():
        m = pattern.match(line)
        if m:
            names[int(m.group("pid"))] = m.group("name")
    return names


def parse_tasklist(output: str) -> Dict[int, str]:
    """Parse Windows ``tasklist /FO CSV /NH`` output into pid -> name."""
    return _parse_names(output, TASKLIST_ROW_RE)


def parse_ps(output: str) -> Dict[int, str]:
    """Parse ``ps -o pid=,comm=`` output into pid -> name.

    macOS reports the executable path in ``comm``, only its basename is
    kept.
    """
    return {
        pid: os.path.basename(name) or name
        for pid, name in _parse_names(output, PS_ROW_RE).items()
    }


async def run_command(
    args: Sequence[str], timeout: float, ok_codes: Tuple[int, ...] = (0,)
) -> str:
    """Run a command and return its decoded standard output.

    Args:
        args (Sequence[str]): Program and arguments.
        timeout (float): Seconds to wait before killing the process.
        ok_codes (Tuple[int, ...]): Exit codes treated as success.

    Raises:
        CommandError: If the program cannot be started, exits with a
            code outside ``ok_codes`` or exceeds ``timeout``.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(f"Cannot run {args[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(), timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandError(f"{args[0]} timed out after {timeout}s")

    if process.returncode not in ok_codes:
        raise CommandError(
            "{} exited with code {}: {}".format(
                args[0],
                process.returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )
        )
    return stdout.decode("utf-8", errors="replace")


class NetworkStateProvider(metaclass=ABCMeta):
    """Source of the OS port table and process names.

    Args:
        timeout (float): Upper bound in seconds for each utility call.
    """

    def __init__(self, timeout: float = DEFAULT_SCAN_TIMEOUT):
        self.timeout = timeout

    @abstractmethod
    async def scan_sockets(self) -> BindingMap:
        """Return all bound sockets keyed by port.

        Raises:
            ScanUnavailableError: If the port table cannot be read. An
                empty dict means the OS reports nothing bound.
        """
        pass

    @abstractmethod
    async def process_names(self) -> Dict[int, str]:
        """Return pid -> process name. Never raises, {} on failure."""
        pass


class CommandProvider(NetworkStateProvider):
    """Provider backed by a socket utility and a process list utility."""

    scan_args: Tuple[str, ...] = ()
    scan_ok_codes: Tuple[int, ...] = (0,)
    names_args: Tuple[str, ...] = ()

    @abstractmethod
    def parse_sockets(self, output: str) -> BindingMap:
        """Turn the socket utility output into bound sockets."""
        pass

    @abstractmethod
    def parse_names(self, output: str) -> Dict[int, str]:
        """Turn the process list output into pid -> name."""
        pass

    async def scan_sockets(self) -> BindingMap:
        try:
            output = await run_command(
                self.scan_args, self.timeout, self.scan_ok_codes
            )
        except CommandError as e:
            logger.warning("Port scan failed: %s", e)
            raise ScanUnavailableError(
                f"Could not run {self.scan_args[0]}, "
                "check server permissions"
            ) from e
        return self.parse_sockets(output)

    async def process_names(self) -> Dict[int, str]:
        try:
            output = await run_command(self.names_args, self.timeout)
        except CommandError as e:
            logger.warning("Process list unavailable: %s", e)
            return {}
        return self.parse_names(output)


class NetstatProvider(CommandProvider):
    """Windows: ``netstat -ano`` and ``tasklist``."""

    scan_args = ("netstat", "-ano")
    names_args = ("tasklist", "/FO", "CSV", "/NH")

    def parse_sockets(self, output: str) -> BindingMap:
        return parse_netstat(output)

    def parse_names(self, output: str) -> Dict[int, str]:
        return parse_tasklist(output)


class SsProvider(CommandProvider):
    """Linux: ``ss`` from iproute2 and ``ps``."""

    scan_args = ("ss", "-Hlntup")
    names_args = ("ps", "-eo", "pid=,comm=")

    def parse_sockets(self, output: str) -> BindingMap:
        return parse_ss(output)

    def parse_names(self, output: str) -> Dict[int, str]:
        return parse_ps(output)


class LsofProvider(CommandProvider):
    """macOS and BSD: ``lsof`` and ``ps``."""

    scan_args = ("lsof", "-nP", "-iTCP", "-sTCP:LISTEN", "-iUDP")
    # lsof exits with 1 when nothing matches the selection
    scan_ok_codes = (0, 1)
    names_args = ("ps", "-axo", "pid=,comm=")

    def parse_sockets(self, output: str) -> BindingMap:
        return parse_lsof(output)

    def parse_names(self, output: str) -> Dict[int, str]:
        return parse_ps(output)


def _psutil_bindings(connections: Iterable) -> BindingMap:
    bindings: BindingMap = {}
    for conn in connections:
        if not conn.laddr:
            continue
        if conn.type == socket.SOCK_STREAM:
            if conn.status != psutil.CONN_LISTEN:
                continue
            proto, state = "TCP", LISTENING_STATE
        elif conn.type == socket.SOCK_DGRAM:
            proto, state = "UDP", UDP_STATE
        else:
            continue
        _add_binding(bindings, conn.laddr.port, conn.pid, proto, state)
    return bindings


class PsutilProvider(NetworkStateProvider):
    """Reads sockets and processes through psutil instead of utilities."""

    async def scan_sockets(self) -> BindingMap:
        try:
            connections = await asyncio.wait_for(
                asyncio.to_thread(psutil.net_connections, kind="inet"),
                self.timeout,
            )
        except (psutil.Error, OSError, asyncio.TimeoutError) as e:
            logger.warning("Port scan failed: %r", e)
            raise ScanUnavailableError(
                "Could not read the socket table, check server permissions"
            ) from e
        return _psutil_bindings(connections)

    async def process_names(self) -> Dict[int, str]:
        def _names() -> Dict[int, str]:
            return {
                p.info["pid"]: p.info["name"]
                for p in psutil.process_iter(["pid", "name"])
                if p.info["name"]
            }

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(_names), self.timeout
            )
        except (psutil.Error, OSError, asyncio.TimeoutError) as e:
            logger.warning("Process list unavailable: %r", e)
            return {}


PROVIDERS = {
    "netstat": NetstatProvider,
    "ss": SsProvider,
    "lsof": LsofProvider,
    "psutil": PsutilProvider,
}


def get_provider(
    name: ProviderName = "auto", timeout: float = DEFAULT_SCAN_TIMEOUT
) -> NetworkStateProvider:
    """Create a provider by name.

    ``"auto"`` picks netstat on Windows, ss on Linux and lsof on other
    platforms.

    Raises:
        ValueError: If ``name`` is unknown.
    """
    if name == "auto":
        if sys.platform.startswith("win"):
            name = "netstat"
        elif sys.platform.startswith("linux"):
            name = "ss"
        else:
            name = "lsof"
    if name not in PROVIDERS:
        raise ValueError(f"Unknown provider: {name}")
    return PROVIDERS[name](timeout=timeout)
