"""Remote executor - runs commands and batch scripts on nodes over SSH.

Uses the system ssh client with ControlMaster multiplexing so repeated polls
of the same host reuse one TCP/SSH session (10-20ms per call instead of a
full handshake). A batch is just a shell script string; no special API is
needed on the remote side.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from ..config import Settings, settings as default_settings
from ..errors import RemoteExecutionError, RemoteTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class RemoteResult:
    """Output of one remote execution."""
    stdout: str
    stderr: str
    exit_code: int


class SshExecutor:
    """Executes commands on a node, each call bounded by its own timeout."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    def build_args(self, target) -> List[str]:
        """ssh arguments for a node (host, port, user, key, multiplexing)."""
        config = self.config
        args = [
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={os.path.join(config.ssh_control_dir, '%C')}",
            "-o", f"ControlPersist={config.ssh_control_persist}",
            "-o", f"ConnectTimeout={config.ssh_connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "ServerAliveInterval=15",
            "-p", str(target.ssh_port or 22),
        ]
        if not target.ssh_password:
            # Never hang on a password prompt
            args += ["-o", "BatchMode=yes"]
            key_path = target.ssh_key_path or config.ssh_key_path
            if key_path:
                args += ["-i", key_path]
        args.append(f"{target.ssh_user or 'root'}@{target.host}")
        return args

    async def run(self, target, command: str, timeout: float) -> RemoteResult:
        """Run ``command`` on ``target``.

        Args:
            target: Node with host and SSH credentials
            command: Shell command or multi-line script
            timeout: Seconds before the ssh process is killed

        Raises:
            RemoteTimeoutError: The command did not finish in time
            RemoteExecutionError: ssh could not be started, or the command
                failed without producing any output
        """
        os.makedirs(self.config.ssh_control_dir, exist_ok=True)

        program = ["ssh", *self.build_args(target), command]
        env = None
        if target.ssh_password:
            # -e reads the password from SSHPASS instead of the process list
            program = ["sshpass", "-e", *program]
            env = {**os.environ, "SSHPASS": target.ssh_password}

        try:
            proc = await asyncio.create_subprocess_exec(
                *program,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise RemoteExecutionError(f"SSH process error: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemoteTimeoutError()

        result = RemoteResult(
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
            exit_code=proc.returncode,
        )

        # Partial output is still usable; only an empty failure is an error
        if result.exit_code != 0 and not result.stdout:
            message = result.stderr or f"Command failed with exit code {result.exit_code}"
            raise RemoteExecutionError(message, exit_code=result.exit_code, stderr=result.stderr)

        return result
