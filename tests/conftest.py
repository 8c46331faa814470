"""Shared fixtures for taskcrew tests."""

import logging
import os

import pytest
import yaml

import taskcrew.config as config_module
import taskcrew.logger as logger_module
from taskcrew.crew.registry import AgentCapability, CapabilityRegistry


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep global config, .env files and logs away from the real home directory."""
    home = tmp_path / "home"
    monkeypatch.setattr(config_module, "CONFIG_DIR", home)
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / "config.yml")
    monkeypatch.setattr(logger_module, "DEFAULT_LOG_FILE", home / "logs" / "taskcrew.log")
    for var in ("TASKCREW_MODEL", "TASKCREW_VERBOSE", "TASKCREW_MAX_CONCURRENT_TASKS"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by CLI runs so later tests don't log to closed streams."""
    yield
    logger = logging.getLogger(logger_module.PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def sample_config_data():
    """Minimal .taskcrew.yml data dict."""
    return {
        "active-model": "local",
        "verbose": False,
        "log-file": False,
        "models": {
            "local": {
                "provider": "local",
                "model": "openai/model",
                "temperature": 0.0,
                "max-tokens": 8192,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            }
        },
        "crew": {
            "max-concurrent-tasks": 2,
            "task-timeout": 60,
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".taskcrew.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def registry():
    """Small registry with two searchers and a supervisor."""
    return CapabilityRegistry([
        AgentCapability("research", ["search", "analyze"], ["semantic_search"], current_load=1),
        AgentCapability("librarian", ["retrieve"], ["Deep_Search"], current_load=0),
        AgentCapability("supervisor", ["coordinate", "plan"], ["task_planning"]),
    ])
