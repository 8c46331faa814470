"""Tests for config loading, env overrides and crew section parsing."""

import yaml

import taskcrew.config as config_module
from taskcrew.config import Config, ModelPreset, default_presets
from taskcrew.crew.crew import CrewConfig
from taskcrew.crew.tasks import ExecutionMode


class TestConfigLoad:

    def test_defaults_without_file(self, tmp_dir):
        config = Config.load(str(tmp_dir))
        assert config.active_model == "local"
        assert set(config.models) == set(default_presets())
        assert config.config_source == "(defaults)"
        assert not config_module.CONFIG_FILE.exists()

    def test_project_file(self, config_yaml_file):
        config = Config.load(str(config_yaml_file.parent))
        assert config.config_source == str(config_yaml_file)
        assert config.log_file is False
        assert config.crew_config["max-concurrent-tasks"] == 2
        assert config.get_active_preset().api_base == "http://localhost:8080/v1"

    def test_git_root_file(self, tmp_dir, sample_config_data):
        (tmp_dir / ".git").mkdir()
        sub = tmp_dir / "pkg"
        sub.mkdir()
        with open(tmp_dir / ".taskcrew.yml", "w") as f:
            yaml.dump(sample_config_data, f)
        config = Config.load(str(sub))
        assert config.config_source == str(tmp_dir / ".taskcrew.yml")

    def test_global_file(self, tmp_dir, isolated_home, sample_config_data):
        isolated_home.mkdir(parents=True)
        sample_config_data["active-model"] = "gpt-4o"
        sample_config_data["models"] = {"gpt-4o": {"provider": "openai", "model": "gpt-4o"}}
        with open(isolated_home / "config.yml", "w") as f:
            yaml.dump(sample_config_data, f)
        config = Config.load(str(tmp_dir))
        assert config.get_active_preset().model == "gpt-4o"

    def test_broken_yaml_uses_defaults(self, tmp_dir):
        (tmp_dir / ".taskcrew.yml").write_text("models: [unclosed", encoding="utf-8")
        config = Config.load(str(tmp_dir))
        assert config.active_model == "local"
        assert config.crew_config == {}

    def test_env_overrides(self, config_yaml_file, monkeypatch):
        monkeypatch.setenv("TASKCREW_MODEL", "gpt-4o")
        monkeypatch.setenv("TASKCREW_VERBOSE", "yes")
        monkeypatch.setenv("TASKCREW_MAX_CONCURRENT_TASKS", "500")
        config = Config.load(str(config_yaml_file.parent))
        assert config.active_model == "gpt-4o"
        assert config.verbose is True
        assert config.crew_config["max-concurrent-tasks"] == 64

    def test_invalid_env_limit_keeps_file_value(self, config_yaml_file, monkeypatch):
        monkeypatch.setenv("TASKCREW_MAX_CONCURRENT_TASKS", "many")
        config = Config.load(str(config_yaml_file.parent))
        assert config.crew_config["max-concurrent-tasks"] == 2

    def test_unknown_active_model_falls_back_to_first(self):
        config = Config(active_model="missing")
        assert config.get_active_preset().name == "local"


class TestModelPreset:

    def test_from_dict_kebab_keys(self):
        preset = ModelPreset.from_dict("x", {"provider": "deepseek", "model": "deepseek/chat",
                                             "max-tokens": "2048", "api-key-env": "MY_KEY"})
        assert preset.max_tokens == 2048
        assert preset.api_key_env == "MY_KEY"

    def test_resolve_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        preset = ModelPreset(name="d", provider="deepseek", model="deepseek/chat")
        assert preset.get_llm_kwargs()["api_key"] == "sk-test"


class TestCrewConfig:

    def test_defaults(self):
        cfg = CrewConfig.from_dict(None)
        assert cfg.max_concurrent_tasks == 3
        assert cfg.task_timeout == 300.0
        assert cfg.mode_override is None

    def test_parses_section(self):
        cfg = CrewConfig.from_dict({
            "max-concurrent-tasks": "5",
            "task-timeout": 45,
            "enable-retries": "off",
            "default-max-retries": 0,
            "execution-mode": "Parallel",
            "memory-file": "~/crew.json",
            "agents": {"research": {"max-concurrent-tasks": 4}},
        })
        assert cfg.max_concurrent_tasks == 5
        assert cfg.task_timeout == 45.0
        assert cfg.enable_retries is False
        assert cfg.default_max_retries == 0
        assert cfg.mode_override == ExecutionMode.PARALLEL
        assert cfg.memory_file == "~/crew.json"
        assert cfg.agents["research"]["max-concurrent-tasks"] == 4

    def test_bad_values_fall_back(self):
        cfg = CrewConfig.from_dict({
            "max-concurrent-tasks": True,
            "task-timeout": -5,
            "retry-base-delay": "soon",
            "execution-mode": "turbo",
            "agents": ["not", "a", "mapping"],
        })
        assert cfg.max_concurrent_tasks == 3
        assert cfg.task_timeout == 300.0
        assert cfg.retry_base_delay == 1.0
        assert cfg.execution_mode == "auto"
        assert cfg.agents == {}

    def test_clamps_concurrency(self):
        assert CrewConfig.from_dict({"max-concurrent-tasks": 0}).max_concurrent_tasks == 1
        assert CrewConfig.from_dict({"max-concurrent-tasks": 1000}).max_concurrent_tasks == 64

    def test_engine_config(self):
        engine_cfg = CrewConfig.from_dict({"task-timeout": 12, "default-agent": "research"}).engine_config()
        assert engine_cfg.task_timeout == 12.0
        assert engine_cfg.default_agent == "research"
