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

import os
from typing import List, Mapping, Optional

import pydantic

from port_register.allocator import DEFAULT_SUGGEST_MAX, DEFAULT_SUGGEST_MIN
from port_register.providers import DEFAULT_SCAN_TIMEOUT, ProviderName
from port_register.registry import DEFAULT_TTL_MINUTES

__all__ = ["PortRegisterCfg", "load_config"]

ENV_PREFIX = "PORT_REGISTER_"


class PortRegisterCfg(pydantic.BaseModel):
    """Configuration for the port register server."""

    host: str = "127.0.0.1"
    """Interface the HTTP server binds to."""

    port: int = pydantic.Field(default=4444, ge=1, le=65535)
    """Port the HTTP server listens on."""

    data_file: str = "ports.json"
    """Path of the JSON registry document."""

    default_ttl_minutes: int = pydantic.Field(
        default=DEFAULT_TTL_MINUTES, gt=0
    )
    """Lease length for new registrations and heartbeats."""

    scan_timeout: float = pydantic.Field(default=DEFAULT_SCAN_TIMEOUT, gt=0)
    """Seconds each OS utility may run before the scan is abandoned."""

    suggest_min: int = pydantic.Field(default=DEFAULT_SUGGEST_MIN, ge=1)
    """Lower bound of /suggest when the request gives none."""

    suggest_max: int = pydantic.Field(default=DEFAULT_SUGGEST_MAX, le=65535)
    """Upper bound of /suggest when the request gives none."""

    provider: ProviderName = "auto"
    """Network state provider, see :func:`get_provider`."""

    log_level: str = "INFO"
    """Level of the ``port_register`` logger."""

    api_prefixes: List[str] = pydantic.Field(
        default_factory=lambda: ["", "/api"]
    )
    """URL prefixes under which the API routes are mounted."""


def load_config(
    config_file: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides,
) -> PortRegisterCfg:
    """Build the configuration from a file, the environment and overrides.

    Later sources win: model defaults, ``config_file``, environment
    variables (``PORT_REGISTER_DATA_FILE``, ``PORT_REGISTER_PROVIDER``,
    ``PORT_REGISTER_LOG_LEVEL``), then keyword ``overrides`` whose value
    is not None.

    Raises:
        FileNotFoundError: If ``config_file`` does not exist.
        pydantic.ValidationError: If a value is invalid.
    """
    if env is None:
        env = os.environ

    values = {}
    if config_file is not None:
        if not os.path.exists(config_file):
            raise FileNotFoundError(f"Cannot find config: {config_file}")
        with open(config_file, "r") as fr:
            values = PortRegisterCfg.model_validate_json(fr.read()).model_dump(
                exclude_unset=True
            )

    for field in ("data_file", "provider", "log_level"):
        value = env.get(ENV_PREFIX + field.upper())
        if value:
            values[field] = value

    values.update({k: v for k, v in overrides.items() if v is not None})
    return PortRegisterCfg.model_validate(values)
