"""Shared fixtures for qai tests."""

import pytest

from qai.agent.providers import TOKEN_ENV_VARS

_ENV_VARS = {"QAI_PROVIDER", "QAI_MODEL", "OLLAMA_HOST"} | {
    var for names in TOKEN_ENV_VARS.values() for var in names
}


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the config dir at a temp dir and clear provider env vars."""
    config_dir = tmp_path / "qai-config"
    monkeypatch.setenv("QAI_CONFIG_DIR", str(config_dir))
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return config_dir


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws
