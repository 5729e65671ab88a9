import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from config import SETTINGS
from models import Deployment, EnvironmentState


DEFAULT_ENVIRONMENTS = ["development", "staging", "production"]
logger = logging.getLogger("opsdeck.storage")


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class EnvironmentRegistry:
    """Fixed set of deployable environments, loaded once from a JSON registry file."""

    def __init__(self, registry_path: Optional[str] = None, names: Optional[List[str]] = None) -> None:
        self.registry_path = registry_path
        if names is None:
            names = self._read_registry()
        if not names:
            names = list(DEFAULT_ENVIRONMENTS)
        self._names = list(dict.fromkeys(names))

    def _read_registry(self) -> List[str]:
        if not self.registry_path:
            return []
        try:
            with open(self.registry_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            logger.warning("environment registry invalid: not valid JSON path=%s", self.registry_path)
            return []
        if not isinstance(data, list):
            logger.warning("environment registry invalid: root must be a list")
            return []
        return [entry["name"] for entry in data if self._is_valid_entry(entry)]

    def _is_valid_entry(self, entry: object) -> bool:
        if not isinstance(entry, dict):
            logger.warning("environment registry invalid entry: not an object")
            return False
        name = entry.get("name")
        if not name or not isinstance(name, str):
            logger.warning("environment registry invalid entry: missing name")
            return False
        if entry.get("enabled", True) is False:
            logger.info("environment registry entry disabled name=%s", name)
            return False
        return True

    def names(self) -> List[str]:
        return list(self._names)

    def has(self, name: str) -> bool:
        return name in self._names

    def initial_states(self) -> dict[str, EnvironmentState]:
        return {name: EnvironmentState() for name in self._names}


class HistoryStore:
    """JSON file holding finished deployments so history survives a restart."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> List[Deployment]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            logger.warning("deploy history invalid: not valid JSON path=%s", self.path)
            return []
        if not isinstance(data, list):
            logger.warning("deploy history invalid: root must be a list")
            return []
        deployments = []
        for item in data:
            try:
                deployments.append(Deployment(**item))
            except Exception:
                logger.warning("deploy history entry skipped id=%s", item.get("id") if isinstance(item, dict) else None)
        return deployments

    def save(self, deployments: List[Deployment]) -> None:
        payload = [deployment.model_dump(mode="json") for deployment in deployments]
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".history-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def build_environment_registry() -> EnvironmentRegistry:
    return EnvironmentRegistry(SETTINGS.environment_registry_path)


def build_history_store() -> Optional[HistoryStore]:
    if not SETTINGS.history_path:
        return None
    return HistoryStore(SETTINGS.history_path)
