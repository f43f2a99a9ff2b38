import asyncio
from types import SimpleNamespace

import pytest

from nodepulse.errors import RemoteExecutionError, RemoteTimeoutError
from nodepulse.services import remote
from nodepulse.services.remote import SshExecutor


def target(**fields):
    defaults = {"host": "10.0.0.5", "ssh_port": 22, "ssh_user": "root", "ssh_key_path": None, "ssh_password": None}
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_key_auth_args(config):
    config.ssh_key_path = "/keys/default"
    args = SshExecutor(config).build_args(target(ssh_port=2222))
    assert "ControlMaster=auto" in args
    assert "BatchMode=yes" in args
    assert args[args.index("-i") + 1] == "/keys/default"
    assert args[args.index("-p") + 1] == "2222"
    assert args[-1] == "root@10.0.0.5"


def test_node_key_overrides_default(config):
    config.ssh_key_path = "/keys/default"
    args = SshExecutor(config).build_args(target(ssh_key_path="/keys/pi"))
    assert args[args.index("-i") + 1] == "/keys/pi"


def test_password_auth_skips_batch_mode(config):
    args = SshExecutor(config).build_args(target(ssh_password="secret", ssh_user="pi"))
    assert "BatchMode=yes" not in args
    assert "-i" not in args
    assert args[-1] == "pi@10.0.0.5"


class FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0, hang=False):
        self._stdout = stdout
        self._stderr = stderr
        self.returncode = returncode
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


def patch_spawn(monkeypatch, process, seen=None):
    async def fake_exec(*program, **kwargs):
        if seen is not None:
            seen.append((program, kwargs))
        return process
    monkeypatch.setattr(remote.asyncio, "create_subprocess_exec", fake_exec)


async def test_run_returns_output(config, monkeypatch):
    seen = []
    patch_spawn(monkeypatch, FakeProcess(stdout=b"hello\n"), seen)
    result = await SshExecutor(config).run(target(), "echo hello", timeout=5)
    assert result.stdout == "hello"
    assert result.exit_code == 0
    assert seen[0][0][0] == "ssh"
    assert seen[0][0][-1] == "echo hello"


async def test_password_uses_sshpass_env(config, monkeypatch):
    seen = []
    patch_spawn(monkeypatch, FakeProcess(stdout=b"ok"), seen)
    await SshExecutor(config).run(target(ssh_password="secret"), "true", timeout=5)
    program, kwargs = seen[0]
    assert program[:3] == ("sshpass", "-e", "ssh")
    assert kwargs["env"]["SSHPASS"] == "secret"
    assert "secret" not in program


async def test_failure_without_output_raises(config, monkeypatch):
    patch_spawn(monkeypatch, FakeProcess(stderr=b"Connection refused", returncode=255))
    with pytest.raises(RemoteExecutionError) as excinfo:
        await SshExecutor(config).run(target(), "uptime", timeout=5)
    assert str(excinfo.value) == "Connection refused"
    assert excinfo.value.exit_code == 255


async def test_partial_output_is_kept(config, monkeypatch):
    patch_spawn(monkeypatch, FakeProcess(stdout=b"---CMD:a---\n1", returncode=1))
    result = await SshExecutor(config).run(target(), "batch", timeout=5)
    assert result.exit_code == 1
    assert result.stdout.endswith("1")


async def test_timeout_kills_process(config, monkeypatch):
    process = FakeProcess(hang=True)
    patch_spawn(monkeypatch, process)
    with pytest.raises(RemoteTimeoutError) as excinfo:
        await SshExecutor(config).run(target(), "sleep 60", timeout=0.05)
    assert process.killed
    assert str(excinfo.value) == "Command timeout"


async def test_spawn_error(config, monkeypatch):
    async def missing(*program, **kwargs):
        raise FileNotFoundError("ssh")
    monkeypatch.setattr(remote.asyncio, "create_subprocess_exec", missing)
    with pytest.raises(RemoteExecutionError):
        await SshExecutor(config).run(target(), "uptime", timeout=5)
