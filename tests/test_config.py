import pytest

from release_orchestrator.config import Settings
from release_orchestrator.errors import ConfigurationError


@pytest.fixture
def base_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "orchestrator.db"))
    monkeypatch.setenv("ENVIRONMENT_NAME", "Dev Box")
    monkeypatch.setenv("ALLOWED_SOURCE_CIDRS", "1.2.3.4/32, 10.0.0.0/8")
    defaults = (
        "TASK_CPU",
        "TASK_MEMORY_MIB",
        "CONTAINER_NAME",
        "CONTAINER_PORT",
        "BOOTSTRAP_IMAGE",
        "TRACKED_BRANCH",
        "WEBHOOK_SECRET",
    )
    for name in defaults:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_settings_defaults(base_env):
    settings = Settings.from_env()

    assert settings.environment_name == "dev-box"
    assert settings.stack_name == "release-dev-box"
    assert settings.allowed_source_cidrs == ("1.2.3.4/32", "10.0.0.0/8")
    assert settings.task_cpu == 256
    assert settings.task_memory_mib == 512
    assert settings.container_port == 80
    assert settings.container_name == "web"
    assert settings.bootstrap_image == "nginx:alpine"
    assert settings.tracked_branch == "main"
    assert settings.webhook_secret is None
    assert settings.database_path == base_env / "orchestrator-dev-box.db"


def test_allow_set_is_required(base_env, monkeypatch):
    monkeypatch.setenv("ALLOWED_SOURCE_CIDRS", " , ")
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_directory_database_path(base_env, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(base_env / "state") + "/")
    settings = Settings.from_env()
    assert settings.database_path == base_env / "state" / "release-orchestrator-dev-box.db"
    assert settings.database_path.parent.is_dir()
