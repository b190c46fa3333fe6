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

from typing import Dict, List, Mapping, Optional

from port_register.models import (
    AnnotatedRegistration,
    PortCheck,
    Registration,
    SocketBinding,
    SystemPort,
)

__all__ = ["annotate", "system_view", "check_port"]


def annotate(
    registrations: List[Registration],
    bindings: Optional[Mapping[int, SocketBinding]],
    names: Mapping[int, str],
) -> List[AnnotatedRegistration]:
    """Attach the observed OS state to each registration.

    Args:
        registrations (List[Registration]): Live registrations.
        bindings (Optional[Mapping[int, SocketBinding]]): Bound sockets
            keyed by port, or None if the port table was unreadable.
        names (Mapping[int, str]): pid -> process name.

    Returns:
        List[AnnotatedRegistration]: One entry per registration, in the
        same order. ``os_in_use`` is None when ``bindings`` is None.
    """
    annotated = []
    for r in registrations:
        fields = r.model_dump()
        if bindings is None:
            annotated.append(AnnotatedRegistration(**fields, os_in_use=None))
            continue

        binding = bindings.get(r.port)
        if binding is None:
            annotated.append(AnnotatedRegistration(**fields, os_in_use=False))
            continue

        annotated.append(
            AnnotatedRegistration(
                **fields,
                os_in_use=True,
                os_pid=binding.pid,
                os_proto=binding.proto,
                os_state=binding.state,
                os_process=names.get(binding.pid),
            )
        )
    return annotated


def system_view(
    bindings: Mapping[int, SocketBinding],
    names: Mapping[int, str],
    registrations: List[Registration],
) -> List[SystemPort]:
    """List every OS-bound port in ascending order with its registration.

    Returns:
        List[SystemPort]: Bound ports annotated with process name and the
        live registration holding the same port, if any.
    """
    by_port: Dict[int, Registration] = {r.port: r for r in registrations}
    ports = []
    for port in sorted(bindings):
        binding = bindings[port]
        registration = by_port.get(port)
        ports.append(
            SystemPort(
                port=port,
                pid=binding.pid,
                proto=binding.proto,
                state=binding.state,
                process=names.get(binding.pid),
                registered=registration is not None,
                registration=registration,
            )
        )
    return ports


def check_port(
    port: int,
    registrations: List[Registration],
    bindings: Optional[Mapping[int, SocketBinding]],
) -> PortCheck:
    """Decide whether ``port`` is safe to use.

    A port is available only when no live registration holds it and the
    OS confirms it is not bound. An unreadable port table never counts as
    "not bound".
    """
    registered = next((r for r in registrations if r.port == port), None)
    os_in_use = None if bindings is None else port in bindings

    if registered is not None:
        recommendation = 'Port {} is registered by "{}" for: {}'.format(
            port, registered.agent, registered.reason
        )
    elif os_in_use:
        recommendation = (
            f"Port {port} is in use by the OS (unregistered process)"
        )
    elif os_in_use is None:
        recommendation = (
            f"Port {port} is not registered, but the OS port table "
            "could not be read"
        )
    else:
        recommendation = f"Port {port} appears to be free, safe to use"

    return PortCheck(
        port=port,
        available=registered is None and os_in_use is False,
        registered_by=registered,
        os_in_use=os_in_use,
        recommendation=recommendation,
    )
