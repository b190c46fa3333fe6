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
import re
import time
from datetime import datetime, timezone
from typing import Any

from port_register.errors import PortValidationError
from port_register.models import MAX_PORT, MIN_PORT

__all__ = ["now_ms", "ms_to_iso", "coerce_int", "coerce_port", "setup_logging"]

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

INT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)


def now_ms() -> int:
    """Current wall clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string.

    Examples:
        >>> ms_to_iso(0)
        '1970-01-01T00:00:00.000Z'
    """
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def coerce_int(value: Any) -> int | None:
    """Interpret a JSON value or query string as an integer.

    Returns:
        int | None: The integer, or None if ``value`` is not an integer
        or a string holding one. Booleans are rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if INT_RE.fullmatch(text):
            return int(text)
    return None


def coerce_port(value: Any) -> int:
    """Validate a port number coming from a request.

    Raises:
        PortValidationError: If the value is missing, not an integer or
            outside the range [1, 65535].
    """
    port = coerce_int(value)
    if port is None or port < MIN_PORT or port > MAX_PORT:
        raise PortValidationError(
            f"Invalid or missing port ({MIN_PORT}-{MAX_PORT})"
        )
    return port


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stream handler to the ``port_register`` logger.

    Calling it again replaces the handler instead of stacking a new one.
    """
    logger = logging.getLogger("port_register")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
