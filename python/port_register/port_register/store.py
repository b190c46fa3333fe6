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

import json
import logging
import os
from abc import ABCMeta, abstractmethod
from typing import List

import aiofiles

from port_register.models import Registration, RegistryDocument

__all__ = ["RegistryStore", "JsonFileStore", "MemoryStore"]

logger = logging.getLogger(__name__)


class RegistryStore(metaclass=ABCMeta):
    """Durable set of registrations with whole-document load and save.

    Stores apply no locking. Callers serialize access, see
    :class:`port_register.registry.PortRegistry`.
    """

    @abstractmethod
    async def load(self) -> List[Registration]:
        """Return all persisted registrations in stored order."""
        pass

    @abstractmethod
    async def save(self, registrations: List[Registration]) -> None:
        """Replace the persisted registrations with ``registrations``."""
        pass


class MemoryStore(RegistryStore):
    """Keeps registrations in process memory."""

    def __init__(self, registrations: List[Registration] | None = None):
        self._registrations = [r.model_copy() for r in registrations or []]

    async def load(self) -> List[Registration]:
        return [r.model_copy() for r in self._registrations]

    async def save(self, registrations: List[Registration]) -> None:
        self._registrations = [r.model_copy() for r in registrations]


class JsonFileStore(RegistryStore):
    """Stores registrations in a single JSON document.

    The file holds ``{"registrations": [...]}`` with camelCase keys. It is
    created empty on first load, and every save writes a temporary
    sibling file which is then swapped into place with ``os.replace``.

    Args:
        path (str): Location of the JSON document.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)

    async def load(self) -> List[Registration]:
        if not os.path.exists(self.path):
            await self.save([])

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
            document = RegistryDocument.model_validate_json(content)
        except (OSError, ValueError) as e:
            logger.warning(
                "Registry file %s is unreadable, treating it as empty: %s",
                self.path,
                e,
            )
            return []
        return document.registrations

    async def save(self, registrations: List[Registration]) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)

        document = RegistryDocument(registrations=list(registrations))
        content = json.dumps(document.to_json_dict(), indent=2)

        tmp_path = f"{self.path}.{os.getpid()}.tmp"
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)
        os.replace(tmp_path, self.path)
