import subprocess
from http.client import BadStatusLine

import pytest

import remote_deploy
from pipeline_errors import DeploymentFailure, DeploymentTimeout
from remote_deploy import RemoteDeployer, restart_script

HOST = "ec2-3-80-1-2.compute-1.amazonaws.com"


class Clock:
    def __init__(self, step=0):
        self.now = 0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def deployer(runner, sleeps):
    return RemoteDeployer("ubuntu", "/tmp/deploy_key", timeout=60, run=runner,
                          sleep=sleeps.append, clock=Clock())


def test_restart_script():
    script = restart_script("/var/app/web", {"STAGING_BRANCH": "feature/x", "QUOTE": "it's"})

    assert script.startswith("set -e\ncd /var/app/web\n")
    assert "export STAGING_BRANCH=feature/x\n" in script
    assert "export QUOTE='it'\"'\"'s'\n" in script
    assert "pm2 restart web --update-env || pm2 start app.py --name web" in script
    assert script.rstrip().endswith("sudo service nginx restart")


def test_deploy_syncs_then_restarts(deployer, runner):
    deployer.deploy(HOST, "web", "/var/app", app_env={"STAGING_PR_NUMBER": "42"})

    ssh_probe, rsync, restart = runner.commands
    assert ssh_probe[0] == "ssh" and ssh_probe[-1] == "true"
    assert "BatchMode=yes" in ssh_probe
    assert rsync[:3] == ["rsync", "-avzr", "--delete"]
    assert rsync[-2:] == ["web", f"ubuntu@{HOST}:/var/app"]
    assert restart[-2] == f"ubuntu@{HOST}"
    assert "cd /var/app/web" in restart[-1]
    assert "export STAGING_PR_NUMBER=42" in restart[-1]
    assert all(kwargs["timeout"] for _, kwargs in runner.calls)


def test_rsync_failure(deployer, runner):
    runner.on("rsync", returncode=12, stderr="rsync error: error in rsync protocol data stream")

    with pytest.raises(DeploymentFailure, match="rsync"):
        deployer.deploy(HOST, "web", "/var/app")


def test_restart_failure(deployer, runner):
    runner.on("ssh", returncode=0, once=True)
    runner.on("ssh", returncode=1, stderr="[PM2][ERROR] Script not found")

    with pytest.raises(DeploymentFailure, match="Script not found"):
        deployer.deploy(HOST, "web", "/var/app")


def test_remote_call_timeout(deployer, runner):
    runner.on("rsync", raises=subprocess.TimeoutExpired("rsync", 60))

    with pytest.raises(DeploymentTimeout, match="timed out after 60s"):
        deployer.deploy(HOST, "web", "/var/app")


def test_ssh_never_comes_up(runner, sleeps):
    runner.on("ssh", returncode=255, stderr="Connection refused")
    deployer = RemoteDeployer("ubuntu", "/tmp/deploy_key", run=runner,
                              sleep=sleeps.append, clock=Clock(step=50))

    with pytest.raises(DeploymentTimeout):
        deployer.wait_for_ssh(HOST, timeout=180)

    assert sleeps and set(sleeps) == {10}


class FakeConnection:
    statuses = []

    def __init__(self, host, timeout=None):
        self.host = host

    def request(self, method, path):
        pass

    def getresponse(self):
        status = self.statuses.pop(0)
        if isinstance(status, Exception):
            raise status
        return type("Response", (), {"status": status})()

    def close(self):
        pass


class TestHealthCheck:
    def test_eventually_healthy(self, deployer, sleeps, monkeypatch):
        FakeConnection.statuses = [ConnectionRefusedError("refused"), 502, 200]
        monkeypatch.setattr(remote_deploy, "HTTPConnection", FakeConnection)

        assert deployer.health_check(HOST, "/up") == 200
        assert len(sleeps) == 2

    def test_malformed_response_is_retried(self, deployer, sleeps, monkeypatch):
        FakeConnection.statuses = [BadStatusLine(""), 200]
        monkeypatch.setattr(remote_deploy, "HTTPConnection", FakeConnection)

        assert deployer.health_check(HOST, "/up") == 200
        assert len(sleeps) == 1

    def test_malformed_responses_fail_the_deploy(self, deployer, monkeypatch):
        FakeConnection.statuses = [BadStatusLine("")] * 2
        monkeypatch.setattr(remote_deploy, "HTTPConnection", FakeConnection)

        with pytest.raises(DeploymentFailure, match="last status: None"):
            deployer.health_check(HOST, "/up", attempts=2, interval=1)

    def test_never_healthy(self, deployer, monkeypatch):
        FakeConnection.statuses = [503] * 3
        monkeypatch.setattr(remote_deploy, "HTTPConnection", FakeConnection)

        with pytest.raises(DeploymentFailure, match="503"):
            deployer.health_check(HOST, "/up", attempts=3, interval=1)


def test_debug_session_without_tmate(deployer, runner, monkeypatch, capsys):
    monkeypatch.setattr(remote_deploy.shutil, "which", lambda name: None)

    deployer.open_debug_session()

    assert runner.calls == []
    assert "ssh -i /tmp/deploy_key" in capsys.readouterr().out


def test_debug_session_with_tmate(deployer, runner, monkeypatch):
    monkeypatch.setattr(remote_deploy.shutil, "which", lambda name: "/usr/bin/tmate")

    deployer.open_debug_session(timeout=5)

    assert runner.calls == [(["tmate", "-F"], {"timeout": 5})]
