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

from typing import Iterable, Mapping, Optional

from port_register.errors import PortNotFoundError, PortValidationError
from port_register.models import (
    MAX_PORT,
    MIN_PORT,
    Registration,
    SocketBinding,
)

__all__ = ["DEFAULT_SUGGEST_MIN", "DEFAULT_SUGGEST_MAX", "suggest_port"]

DEFAULT_SUGGEST_MIN = 3000
DEFAULT_SUGGEST_MAX = 9999


def suggest_port(
    min_port: int,
    max_port: int,
    registrations: Iterable[Registration],
    bindings: Optional[Mapping[int, SocketBinding]],
) -> int:
    """Find the lowest port in ``[min_port, max_port]`` that is free.

    Ports are scanned in ascending order so the answer is reproducible.
    A port is taken if a live registration holds it or the OS reports it
    bound. When ``bindings`` is None only registrations are considered.

    Args:
        min_port (int): First port of the range, inclusive.
        max_port (int): Last port of the range, inclusive.
        registrations (Iterable[Registration]): Live registrations.
        bindings (Optional[Mapping[int, SocketBinding]]): OS bound ports,
            captured once by the caller, or None if unavailable.

    Returns:
        int: The first free port.

    Raises:
        PortValidationError: If the range is empty or out of bounds.
        PortNotFoundError: If every port in the range is taken.
    """
    if not MIN_PORT <= min_port <= max_port <= MAX_PORT:
        raise PortValidationError(
            f"Invalid port range {min_port}-{max_port} "
            f"(must satisfy {MIN_PORT} <= min <= max <= {MAX_PORT})"
        )

    registered = {r.port for r in registrations}
    bound = bindings if bindings is not None else {}
    for port in range(min_port, max_port + 1):
        if port not in registered and port not in bound:
            return port

    raise PortNotFoundError(
        f"No available ports found in range {min_port}-{max_port}"
    )
