import orjson
import pytest

from cellrunner.settings import ErrorPolicy, RuntimeSettings, load_servers


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SERVER_URL", "SERVER_TOKEN", "SERVERS_FILE", "RUN_ALL_ERROR_POLICY"):
        monkeypatch.delenv(f"CELLRUNNER_{name}", raising=False)


def test_defaults():
    settings = RuntimeSettings(_env_file=None)

    assert settings.default_kernel_name == "python3"
    assert settings.execution_timeout is None
    assert settings.run_all_error_policy is ErrorPolicy.continue_on_error
    assert load_servers(settings) == []


def test_single_server_from_env(monkeypatch):
    monkeypatch.setenv("CELLRUNNER_SERVER_URL", "localhost:8888")
    monkeypatch.setenv("CELLRUNNER_SERVER_TOKEN", "abc")
    monkeypatch.setenv("CELLRUNNER_RUN_ALL_ERROR_POLICY", "stop")

    settings = RuntimeSettings(_env_file=None)
    (server,) = load_servers(settings)

    assert server.id == "default"
    assert server.base_url == "http://localhost:8888"
    assert server.auth_token == "abc"
    assert settings.run_all_error_policy is ErrorPolicy.stop_on_error


def test_servers_file(tmp_path, monkeypatch):
    servers_file = tmp_path / "servers.json"
    servers_file.write_bytes(
        orjson.dumps(
            [
                {"id": "gpu", "base_url": "https://gpu.example.com", "auth_token": "t1"},
                {"id": "local", "base_url": "localhost:8888"},
            ]
        )
    )
    monkeypatch.setenv("CELLRUNNER_SERVERS_FILE", str(servers_file))
    monkeypatch.setenv("CELLRUNNER_SERVER_URL", "other:9999")

    servers = load_servers(RuntimeSettings(_env_file=None))

    assert [s.id for s in servers] == ["gpu", "local", "default"]
    assert servers[2].base_url == "http://other:9999"


def test_servers_file_wins_over_env(tmp_path):
    servers_file = tmp_path / "servers.json"
    servers_file.write_bytes(orjson.dumps([{"id": "default", "base_url": "from-file"}]))

    settings = RuntimeSettings(
        _env_file=None, servers_file=servers_file, server_url="from-env"
    )
    (server,) = load_servers(settings)

    assert server.base_url == "http://from-file"
