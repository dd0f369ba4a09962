"""Deploy the application subtree to a staging instance over rsync/ssh.

Every remote call carries a timeout; expiry is a DeploymentTimeout. There
is no automatic rollback: when a deploy fails the operator may open a
tmate session from the CI runner to investigate by hand.
"""
import shlex
import shutil
import subprocess
import time
from http.client import HTTPConnection, HTTPException
from typing import Callable, Dict, Optional

from pipeline_errors import DeploymentFailure, DeploymentTimeout

# ---------------------------------------------------------------------------
# SSH helpers
# ---------------------------------------------------------------------------

SSH_OPTS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "ConnectTimeout=10",
    "-o", "BatchMode=yes",
]

PROCESS_NAME = "web"
APP_ENTRYPOINT = "app.py"
DEBUG_SESSION_TIMEOUT = 1800


def restart_script(app_path: str, app_env: Optional[Dict[str, str]] = None) -> str:
    """Shell run on the instance after sync.

    Reinstalls dependencies, (re)starts the pm2 entry with the exported
    app environment, then restarts nginx.
    """
    exports = "".join(f"export {k}={shlex.quote(v)}\n"
                      for k, v in (app_env or {}).items())
    app = shlex.quote(app_path)
    return (
        "set -e\n"
        f"cd {app}\n"
        f"{exports}"
        "python3 -m pip install --user --quiet -r requirements.txt\n"
        f"pm2 restart {PROCESS_NAME} --update-env || "
        f"pm2 start {APP_ENTRYPOINT} --name {PROCESS_NAME} --interpreter python3\n"
        "pm2 save\n"
        "sudo service nginx restart\n"
    )


class RemoteDeployer:
    def __init__(self, user: str, key_path: str, *, timeout: int = 600,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.user = user
        self.key_path = key_path
        self.timeout = timeout
        self._run = run
        self._sleep = sleep
        self._clock = clock

    def _target(self, host: str) -> str:
        return f"{self.user}@{host}"

    def _call(self, cmd, what: str, timeout: Optional[int] = None):
        timeout = timeout or self.timeout
        try:
            result = self._run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise DeploymentTimeout(f"{what} timed out after {timeout}s")
        return result.returncode, (result.stdout or "").strip(), (result.stderr or "").strip()

    def ssh_run(self, host: str, command: str, timeout: Optional[int] = None):
        """Run a remote command via SSH. Returns (rc, stdout, stderr)."""
        cmd = ["ssh"] + SSH_OPTS + ["-i", self.key_path, self._target(host), command]
        return self._call(cmd, f"ssh {host}", timeout)

    def wait_for_ssh(self, host: str, timeout: int = 180) -> None:
        """Poll SSH every 10s until it responds; fresh instances take a while."""
        print(f"  Waiting for SSH on {host} (timeout {timeout}s)...")
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            try:
                rc, _, _ = self.ssh_run(host, "true", timeout=30)
                if rc == 0:
                    print(f"  SSH ready on {host}")
                    return
            except DeploymentTimeout:
                pass
            self._sleep(10)
        raise DeploymentTimeout(f"SSH on {host} not reachable after {timeout}s")

    def sync(self, local_dir: str, host: str, remote_root: str) -> None:
        ssh = " ".join(["ssh", "-i", shlex.quote(self.key_path)] + SSH_OPTS)
        cmd = ["rsync", "-avzr", "--delete", "-e", ssh,
               local_dir.rstrip("/"), f"{self._target(host)}:{remote_root}"]
        print(f"  $ rsync -avzr --delete {local_dir} {self._target(host)}:{remote_root}")
        rc, out, err = self._call(cmd, f"rsync to {host}")
        if rc != 0:
            raise DeploymentFailure(f"rsync to {host} failed (rc={rc}): {err or out}")
        print(f"  Synced {local_dir} -> {host}:{remote_root}")

    def run_remote(self, host: str, command: str) -> str:
        rc, out, err = self.ssh_run(host, command)
        if rc != 0:
            raise DeploymentFailure(
                f"Remote command on {host} failed (rc={rc}): {err or out}")
        return out

    def restart(self, host: str, app_path: str,
                app_env: Optional[Dict[str, str]] = None) -> None:
        print(f"  Restarting {PROCESS_NAME} and nginx on {host}...")
        self.run_remote(host, restart_script(app_path, app_env))
        print("  Restarted")

    def health_check(self, address: str, path: str = "/up", *,
                     attempts: int = 12, interval: int = 5) -> int:
        """GET http://address/path until it returns 200."""
        status = None
        for attempt in range(1, attempts + 1):
            try:
                conn = HTTPConnection(address, timeout=10)
                conn.request("GET", path)
                status = conn.getresponse().status
                conn.close()
                if status == 200:
                    print(f"  Health check {path}: 200 (attempt {attempt})")
                    return status
            except (OSError, HTTPException) as e:
                status = None
                print(f"  Health check attempt {attempt}/{attempts}: {e}")
            self._sleep(interval)
        raise DeploymentFailure(
            f"Health check http://{address}{path} failed (last status: {status})")

    def deploy(self, host: str, local_dir: str, remote_root: str,
               app_env: Optional[Dict[str, str]] = None,
               health_check_path: str = "") -> None:
        self.wait_for_ssh(host)
        self.sync(local_dir, host, remote_root)
        app_name = local_dir.rstrip("/").split("/")[-1]
        self.restart(host, f"{remote_root.rstrip('/')}/{app_name}", app_env)
        if health_check_path:
            self.health_check(host, health_check_path)

    def open_debug_session(self, timeout: int = DEBUG_SESSION_TIMEOUT) -> None:
        """Hold the runner open in a foreground tmate session.

        Without tmate, print the ssh command for manual recovery instead.
        """
        if not shutil.which("tmate"):
            print("  tmate not installed; connect manually with:")
            print(f"    ssh -i {self.key_path} {self.user}@<staging-address>")
            return
        print(f"  Opening tmate session (timeout {timeout}s)...")
        try:
            self._run(["tmate", "-F"], timeout=timeout)
        except subprocess.TimeoutExpired:
            print("  Debug session timed out")
