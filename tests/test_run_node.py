import pytest

from hwchat import run_node
from hwchat.config import ClientConfig, ServerConfig


def test_parse_args_requires_mode():
    with pytest.raises(SystemExit):
        run_node.parse_args([])


def test_overrides_apply_to_loaded_config():
    args = run_node.parse_args(["--mode", "client", "--host", "10.0.0.5", "--port", "9000", "--name", "Alice"])
    cfg = run_node.apply_overrides(ClientConfig(name="Bob"), args)
    assert (cfg.host, cfg.port, cfg.name) == ("10.0.0.5", 9000, "Alice")


def test_name_override_ignored_for_server():
    args = run_node.parse_args(["--mode", "server", "--name", "Alice"])
    cfg = run_node.apply_overrides(ServerConfig(), args)
    assert cfg == ServerConfig()


def test_hwid_mode_prints_hwid(capsys, monkeypatch):
    monkeypatch.setattr(run_node, "derive_hwid", lambda: "ab" * 32)
    run_node.main(["--mode", "hwid", "--log-level", "WARNING"])
    assert capsys.readouterr().out.strip() == "ab" * 32


def test_server_bind_failure_exits(tmp_path, monkeypatch):
    async def refuse(config):
        raise OSError(98, "Address already in use")

    monkeypatch.setattr(run_node, "run_server", refuse)
    with pytest.raises(SystemExit) as info:
        run_node.main(["--mode", "server", "--config", str(tmp_path / "s.toml")])
    assert "Unable to bind" in str(info.value)
