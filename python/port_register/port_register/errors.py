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

from typing import Any

__all__ = [
    "PortRegisterError",
    "PortValidationError",
    "PortConflictError",
    "PortNotFoundError",
    "AgentMismatchError",
    "ScanUnavailableError",
]


class PortRegisterError(Exception):
    """Base class of all errors reported to port register clients.

    Args:
        message (str): Human readable description of the failure.
        **extra: Additional JSON-serializable fields that are merged into
            the error response body.
    """

    status_code: int = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class PortValidationError(PortRegisterError):
    """Exception raised for malformed or out-of-range input."""

    status_code = 400


class PortConflictError(PortRegisterError):
    """Exception raised when a port is already actively registered."""

    status_code = 409


class PortNotFoundError(PortRegisterError):
    """Exception raised when no active registration or free port exists."""

    status_code = 404


class AgentMismatchError(PortRegisterError):
    """Exception raised when an agent touches another agent's port."""

    status_code = 403


class ScanUnavailableError(PortRegisterError):
    """Exception raised when the OS port table could not be read."""

    status_code = 500
