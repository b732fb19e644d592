import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / 'config.yaml'
CONFIG_PATH_ENV = 'SPREAD_BOT_CONFIG'

# ${NAME} or ${NAME:-fallback}
_ENV_PATTERN = re.compile(r'^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>.*))?\}$')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view of one config section; nested dicts come back as proxies."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class Config:
    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str):
            match = _ENV_PATTERN.match(node)
            if match:
                value = os.getenv(match.group('name'))
                if value is not None:
                    return value
                # Unset without a fallback resolves to None
                return match.group('fallback') or None
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> SectionProxy:
        """Return a section as a proxy, empty when the section is missing."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
