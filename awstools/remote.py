"""Remote operations: rsync file sync, SSH commands and instance metadata."""

import shlex
import urllib.error
import urllib.parse
import urllib.request

from fabric import Connection
from paramiko.ssh_exception import SSHException

from .poller import Poller
from .utils import LogStream, log, run_cmd, warn

METADATA_URL = "http://169.254.169.254/latest/meta-data/"
SSH_OPTIONS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null -o LogLevel=ERROR"
SYNC_EXCLUDES = [".svn", ".git"]


def _connection(address: str, key_pair_path: str, user: str, timeout: int | None = None) -> Connection:
    connect_kwargs = {"key_filename": key_pair_path, "look_for_keys": False}
    if timeout is not None:
        connect_kwargs["timeout"] = timeout
    return Connection(address, user=user, connect_kwargs=connect_kwargs)


def sync_content(
    files_mapping: dict[str, str],
    key_pair_path: str,
    address: str,
    *,
    user: str = "ubuntu",
) -> bool:
    """Rsync local paths to a remote instance, one mapping entry at a time.

    Stops at the first failing transfer.

    :param files_mapping: Local path -> remote path
    :param key_pair_path: Private key used for SSH
    :param address: IP or hostname of the remote instance
    :param user: Remote SSH user
    :return: True if every transfer exited with status 0
    """
    for local_file, remote_file in files_mapping.items():
        log(f"Synchronizing '{local_file}' -> '{address}:{remote_file}'...")
        cmd = [
            "rsync",
            "-e",
            f"ssh {SSH_OPTIONS} -i {shlex.quote(key_pair_path)}",
            "--rsync-path=sudo rsync",
        ]
        for ex in SYNC_EXCLUDES:
            cmd.extend(["--exclude", ex])
        cmd.extend(["-a", "--delete", local_file, f"{user}@{address}:{remote_file}"])

        returncode = run_cmd(*cmd)
        if returncode != 0:
            warn(f"rsync of '{local_file}' failed with exit code {returncode}")
            return False
    return True


def execute_remote_command(
    address: str,
    key_pair_path: str,
    command: str,
    *,
    user: str = "ubuntu",
) -> bool:
    """Run a command on a remote instance over SSH with a pty.

    :return: True if the command exited with status 0
    """
    log(f"Running on '{address}': {command}")
    stream = LogStream()
    try:
        with _connection(address, key_pair_path, user) as c:
            result = c.run(
                command,
                pty=True,
                hide=True,
                warn=True,
                in_stream=False,
                out_stream=stream,
            )
    except (SSHException, OSError) as e:
        warn(f"SSH to '{address}' failed: {e}")
        return False
    finally:
        stream.flush()

    if result.failed:
        warn(f"Command exited with status {result.exited} on '{address}'")
        return False
    return True


def check_ssh_ready(address: str, key_pair_path: str, user: str = "ubuntu", timeout: int = 5) -> bool:
    """Quick check if an instance accepts SSH logins."""
    try:
        with _connection(address, key_pair_path, user, timeout=timeout) as c:
            c.run("echo ok", hide=True, in_stream=False)
        return True
    except Exception:
        return False


def wait_for_ssh(address: str, key_pair_path: str, *, poller: Poller, user: str = "ubuntu") -> None:
    """Block until the instance accepts SSH logins.

    :raises WaitTimeoutError: If the poller's deadline passes first
    """

    def fetch(handle: str) -> dict:
        return {"ssh": "ready" if check_ssh_ready(handle, key_pair_path, user) else "down"}

    poller.wait(address, {"ssh": "ready"}, fetch)


def get_instance_metadata(path: str, timeout: int = 5) -> list[str] | None:
    """Read a value from the instance metadata service.

    :param path: Metadata path, e.g. ``instance-id`` or ``public-keys/``
    :return: Each URL-decoded line of the response, or None if unavailable
    """
    url = METADATA_URL + path.lstrip("/")
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            contents = response.read().decode("utf8")
    except (urllib.error.URLError, OSError) as e:
        warn(f"Could not read instance metadata '{path}': {e}")
        return None
    return [urllib.parse.unquote(line) for line in contents.split("\n")]
