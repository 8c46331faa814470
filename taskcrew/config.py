"""
Configuration: model presets plus the ``crew:`` section.

Files are searched in this order and the first one found wins:
  1. <project>/.taskcrew.yml
  2. <git root>/.taskcrew.yml
  3. ~/.taskcrew/config.yml

Nothing is written when no file exists; built-in defaults are used instead.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import yaml
from dotenv import load_dotenv

from .logger import get_logger

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".taskcrew"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".taskcrew.yml"

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})

# provider -> environment variable holding its API key
_PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, (bool, int, float)):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUTHY:
            return True
        if word in _FALSY:
            return False
    return default


def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
    """Parse an int and clamp it to ``[min_value, max_value]``; junk yields ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, min(number, max_value))


def _coerce_positive_float(value, default: float, min_value: float = 0.0,
                           max_value: float = 86400.0) -> float:
    """Like :func:`_coerce_positive_int`, but zero and negatives also yield ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return max(min_value, min(number, max_value))


@dataclass
class ModelPreset:
    """A named LLM endpoint selectable with ``active-model`` or ``--model``."""

    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 4096
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        """Explicit key, then ``api_key_env``, then the provider's usual variable."""
        if self.api_key:
            return self.api_key
        env_name = self.api_key_env or _PROVIDER_KEY_ENV.get(self.provider)
        return os.environ.get(env_name) if env_name else None

    def get_llm_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``LLMAdapter``, API key resolved."""
        kwargs: Dict[str, Any] = dict(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        kwargs.update(api_base=self.api_base, api_key=self.resolve_api_key())
        return kwargs

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ModelPreset":
        get = data.get
        return cls(
            name=name,
            provider=get("provider", "openai"),
            model=get("model", name),
            api_base=get("api-base"),
            api_key=get("api-key"),
            api_key_env=get("api-key-env"),
            temperature=float(get("temperature", 0.0)),
            max_tokens=_coerce_positive_int(get("max-tokens"), 4096),
            description=get("description", ""),
        )


def _fallback_preset(name: str = "default") -> ModelPreset:
    return ModelPreset(name, "local", "openai/model",
                       api_base="http://localhost:8080/v1", api_key="not-needed")


def default_presets() -> Dict[str, ModelPreset]:
    local = _fallback_preset("local")
    local.description = "Local OpenAI-compatible server on :8080"
    presets = [
        local,
        ModelPreset("gpt-4o", "openai", "gpt-4o",
                    api_key_env="OPENAI_API_KEY", description="OpenAI GPT-4o"),
        ModelPreset("deepseek-chat", "deepseek", "deepseek/deepseek-chat",
                    api_key_env="DEEPSEEK_API_KEY", description="DeepSeek chat"),
    ]
    return {p.name: p for p in presets}


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=default_presets)
    verbose: bool = False
    log_file: Union[str, bool, None] = None
    crew_config: Dict[str, Any] = field(default_factory=dict)  # raw crew: section
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        root = Path(project_dir).resolve()
        config = cls(project_root=str(root))

        for env_file in (CONFIG_DIR / ".env", root / ".env"):
            if env_file.exists():
                load_dotenv(env_file, override=False)

        source = next(cls._config_files(root), None)
        if source is not None:
            config._load_yaml(source)
            config._config_source = str(source)

        config._apply_env()
        return config

    @classmethod
    def _config_files(cls, root: Path) -> Iterator[Path]:
        """Existing config files, highest priority first."""
        candidates = [root / PROJECT_CONFIG_NAME]
        git_root = cls._find_git_root(root)
        if git_root is not None and git_root != root:
            candidates.append(git_root / PROJECT_CONFIG_NAME)
        candidates.append(CONFIG_FILE)
        return (p for p in candidates if p.exists())

    def _load_yaml(self, filepath: Path) -> None:
        try:
            data = yaml.safe_load(filepath.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Cannot read config %s, using defaults: %s", filepath, e)
            return
        if not isinstance(data, dict):
            _log.warning("Config %s is not a mapping, using defaults", filepath)
            return

        models = data.get("models")
        if isinstance(models, dict) and models:
            self.models = {n: ModelPreset.from_dict(n, m or {}) for n, m in models.items()}
        self.active_model = str(data.get("active-model", self.active_model))
        self.verbose = _coerce_bool(data.get("verbose"), False)
        self.log_file = data.get("log-file")
        crew = data.get("crew")
        self.crew_config = dict(crew) if isinstance(crew, dict) else {}

    def _apply_env(self) -> None:
        env = os.environ
        if env.get("TASKCREW_MODEL"):
            self.active_model = env["TASKCREW_MODEL"]
        if env.get("TASKCREW_VERBOSE"):
            self.verbose = _coerce_bool(env["TASKCREW_VERBOSE"], self.verbose)
        if env.get("TASKCREW_MAX_CONCURRENT_TASKS"):
            from_file = _coerce_positive_int(self.crew_config.get("max-concurrent-tasks"), 3)
            self.crew_config["max-concurrent-tasks"] = _coerce_positive_int(
                env["TASKCREW_MAX_CONCURRENT_TASKS"], from_file, max_value=64)

    def get_active_preset(self) -> ModelPreset:
        """The active preset, else the first configured one, else a local default."""
        preset = self.models.get(self.active_model)
        if preset is None and self.models:
            preset = next(iter(self.models.values()))
        return preset or _fallback_preset()

    @property
    def config_source(self) -> str:
        return self._config_source or "(defaults)"

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        return next((d for d in (path, *path.parents) if (d / ".git").exists()), None)
