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

from typing import List, Literal, Optional

import pydantic
from pydantic.alias_generators import to_camel

__all__ = [
    "Registration",
    "RegistryDocument",
    "SocketBinding",
    "AnnotatedRegistration",
    "SystemPort",
    "PortCheck",
]

MIN_PORT = 1
MAX_PORT = 65535

UDP_STATE = "UDP"
"""Synthetic state label for connectionless sockets, which are always
bound while they exist."""

LISTENING_STATE = "LISTENING"


class _CamelModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=to_camel, populate_by_name=True
    )

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Registration(_CamelModel):
    """A lease granting one agent exclusive claim to a port."""

    port: int
    """Registered port number."""

    agent: str
    """Identity of the owning agent."""

    reason: str
    """Free text describing what the port is used for."""

    registered_at: str
    """ISO-8601 creation timestamp."""

    expires_at: Optional[int] = None
    """Absolute expiry as epoch milliseconds. None never expires."""

    id: str
    """Stable identifier, ``"<port>-<created epoch ms>"``."""

    last_heartbeat: Optional[str] = None
    """ISO-8601 timestamp of the latest heartbeat, if any."""


class RegistryDocument(_CamelModel):
    """Layout of the persisted registry file."""

    registrations: List[Registration] = pydantic.Field(
        default_factory=lambda: []
    )


class SocketBinding(_CamelModel):
    """A port the OS reports as bound, derived fresh per request."""

    port: int
    pid: Optional[int] = None
    proto: Literal["TCP", "UDP"]
    state: str


class AnnotatedRegistration(Registration):
    """A registration joined with the observed OS socket state.

    ``os_in_use`` is tri-state: True when bound, False when the OS
    confirms it is not bound, None when the port table was unreadable.
    """

    os_in_use: Optional[bool] = None
    os_pid: Optional[int] = None
    os_proto: Optional[str] = None
    os_state: Optional[str] = None
    os_process: Optional[str] = None


class SystemPort(_CamelModel):
    """An OS-bound port joined with the registry."""

    port: int
    pid: Optional[int] = None
    proto: str
    state: str
    process: Optional[str] = None
    registered: bool = False
    registration: Optional[Registration] = None


class PortCheck(_CamelModel):
    """Availability verdict for a single port."""

    port: int
    available: bool
    registered_by: Optional[Registration] = None
    os_in_use: Optional[bool] = None
    recommendation: str
