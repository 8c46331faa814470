"""Context store contract plus in-memory and JSON-file implementations.

Keys are namespaced strings:

- ``conversation:<id>``   chat history for a conversation
- ``execution:<planId>``  execution-context snapshot after a run
- ``interactions:<taskId>`` agent interactions logged against a task
- ``artifact:<id>``       artifacts produced by workers
"""

import copy
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import ContextStoreError
from ..logger import get_logger
from .tasks import AgentInteraction, ExecutionContext, TaskArtifact

_log = get_logger(__name__)


class ContextStore(ABC):
    """Async key-value contract the crew core persists through."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        ...

    async def append(self, key: str, value: Any) -> None:
        """Append ``value`` to the list stored under ``key``."""
        current = await self.get(key)
        items = list(current) if isinstance(current, list) else []
        items.append(value)
        await self.set(key, items)


class MemoryContextStore(ContextStore):
    """Process-local store. Values are deep-copied on the way in and out."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._data if k.startswith(prefix)]


class JsonFileContextStore(ContextStore):
    """Whole-file JSON store; every write rewrites the file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            if self.path.exists():
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    raise ContextStoreError(f"Cannot read context store {self.path}: {e}") from e
                if not isinstance(data, dict):
                    raise ContextStoreError(f"Context store {self.path} is not a JSON object")
                self._data = data
            else:
                self._data = {}
        return self._data

    def _save(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2, default=str)
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            raise ContextStoreError(f"Cannot write context store {self.path}: {e}") from e

    async def get(self, key: str, default: Any = None) -> Any:
        data = self._load()
        if key not in data:
            return default
        return copy.deepcopy(data[key])

    async def set(self, key: str, value: Any) -> None:
        self._load()[key] = copy.deepcopy(value)
        self._save()

    async def delete(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return False
        del data[key]
        self._save()
        return True

    async def keys(self, prefix: str = "") -> List[str]:
        return [k for k in self._load() if k.startswith(prefix)]


class CrewMemory:
    """Namespaced access to a :class:`ContextStore`."""

    def __init__(self, store: Optional[ContextStore] = None):
        self.store = store or MemoryContextStore()

    # conversations

    async def get_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        return await self.store.get(f"conversation:{conversation_id}", [])

    async def append_conversation_message(self, conversation_id: str, role: str,
                                          content: str) -> None:
        await self.store.append(
            f"conversation:{conversation_id}", {"role": role, "content": content})

    # execution contexts

    async def save_execution_context(self, context: ExecutionContext) -> None:
        await self.store.set(f"execution:{context.plan_id}", context.to_dict())

    async def load_execution_context(self, plan_id: str) -> Optional[ExecutionContext]:
        data = await self.store.get(f"execution:{plan_id}")
        return ExecutionContext.from_dict(data) if data else None

    # interactions

    async def store_interaction(self, interaction: AgentInteraction) -> None:
        await self.store.append(f"interactions:{interaction.task_id}", interaction.to_dict())

    async def get_interactions(self, task_id: str) -> List[AgentInteraction]:
        raw = await self.store.get(f"interactions:{task_id}", [])
        return [AgentInteraction.from_dict(i) for i in raw]

    # artifacts

    async def store_artifact(self, artifact: TaskArtifact) -> None:
        await self.store.set(f"artifact:{artifact.id}", artifact.to_dict())

    async def get_artifact(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(f"artifact:{artifact_id}")


def create_memory(memory_file: Optional[str] = None) -> CrewMemory:
    """In-memory store unless a JSON file path is configured."""
    if memory_file:
        _log.info("Using JSON context store at %s", memory_file)
        return CrewMemory(JsonFileContextStore(memory_file))
    return CrewMemory(MemoryContextStore())
