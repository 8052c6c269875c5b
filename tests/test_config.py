import sys

from perfscope.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("PERFSCOPE_CORS_ORIGINS", raising=False)
    monkeypatch.delenv("PERFSCOPE_PYTHON_EXECUTABLE", raising=False)
    settings = Settings(_env_file=None)
    assert settings.cors_origins == ["*"]
    assert settings.python_executable == sys.executable
    assert settings.channel_size == 1024


def test_prefixed_environment_overrides(monkeypatch):
    monkeypatch.setenv("PERFSCOPE_PYTHON_TIMEOUT", "2.5")
    monkeypatch.setenv("PERFSCOPE_FEED_RETENTION", "7")
    monkeypatch.setenv("PERFSCOPE_CORS_ORIGINS", "http://a.test, http://b.test,")
    monkeypatch.setenv("FEED_RETENTION", "99")
    settings = Settings(_env_file=None)
    assert settings.python_timeout == 2.5
    assert settings.feed_retention == 7
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_env_file_is_read(tmp_path, monkeypatch):
    monkeypatch.delenv("PERFSCOPE_NODE_EXECUTABLE", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PERFSCOPE_NODE_EXECUTABLE=/opt/node/bin/node\n")
    assert Settings(_env_file=env_file).node_executable == "/opt/node/bin/node"
