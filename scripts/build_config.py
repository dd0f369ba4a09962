#!/usr/bin/env python3
"""Build pipeline configuration JSON from workflow inputs.

Reads INPUT_* and GITHUB_* environment variables and writes
/tmp/pipeline-config.json for deploy_pr_staging.py and
teardown_pr_staging.py.

Reads from environment:
  INPUT_PR_NUMBER        - Pull request number (required)
  INPUT_CATALOG          - Environment catalog path (default: infra/environments.yml)
  INPUT_TERRAFORM_DIR    - Staging Terraform directory (default: infra/instances/staging)
  INPUT_STATE_BRANCH     - Branch holding definitions and state (default: infra)
  INPUT_APP_DIR          - Application subtree to deploy (default: web)
  INPUT_REMOTE_ROOT      - Remote directory receiving the subtree (default: /var/app)
  INPUT_DEPLOY_TIMEOUT   - Seconds allowed per remote call (default: 600)
  INPUT_PUSH_RETRIES     - Rejected-push retries (default: 3)
  INPUT_DEBUG_SESSION    - Open a tmate session on deploy failure (true/false)
  INPUT_HEALTH_CHECK     - Health check path, empty to disable (default: /up)
  REMOTE_USER            - SSH user on the staging instance (default: ubuntu)
  SSH_KEY_PATH           - Private key file (default: /tmp/deploy_key)
  APP_ENV_VARS           - dotenv-formatted env vars exported to the app
  GITHUB_REPOSITORY      - owner/name of this repository
  GITHUB_ACTOR           - User who triggered the run
  GITHUB_EVENT_NAME      - Triggering event

Secrets (GITHUB_TOKEN, the SSH private key) are read at runtime and never
written to the config file.
"""
import json
import os
import sys
from dataclasses import dataclass, field
from io import StringIO
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values

CONFIG_PATH = "/tmp/pipeline-config.json"


@dataclass(frozen=True)
class PipelineConfig:
    pr_number: int
    repository: str
    actor: str = "github-actions"
    event_name: str = "workflow_dispatch"
    catalog: str = "infra/environments.yml"
    terraform_dir: str = "infra/instances/staging"
    state_branch: str = "infra"
    app_dir: str = "web"
    remote_root: str = "/var/app"
    remote_user: str = "ubuntu"
    ssh_key_path: str = "/tmp/deploy_key"
    deploy_timeout: int = 600
    push_retries: int = 3
    debug_session: bool = False
    health_check_path: str = "/up"
    app_env: Dict[str, str] = field(default_factory=dict)


def parse_pr_number(raw) -> int:
    """Coerce a PR number input; raises ValueError unless a positive integer."""
    try:
        number = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValueError(f"PR number must be a positive integer, got {raw!r}")
    if number <= 0:
        raise ValueError(f"PR number must be a positive integer, got {raw!r}")
    return number


def parse_app_env(text: str) -> Dict[str, str]:
    values = dotenv_values(stream=StringIO(text or ""))
    return {k: ("" if v is None else v) for k, v in values.items()}


def build_config(environ: Mapping[str, str]) -> dict:
    return {
        "pr_number": parse_pr_number(environ.get("INPUT_PR_NUMBER", "")),
        "repository": environ.get("GITHUB_REPOSITORY", ""),
        "actor": environ.get("GITHUB_ACTOR") or "github-actions",
        "event_name": environ.get("GITHUB_EVENT_NAME") or "workflow_dispatch",
        "catalog": environ.get("INPUT_CATALOG") or "infra/environments.yml",
        "terraform_dir": environ.get("INPUT_TERRAFORM_DIR") or "infra/instances/staging",
        "state_branch": environ.get("INPUT_STATE_BRANCH") or "infra",
        "app_dir": environ.get("INPUT_APP_DIR") or "web",
        "remote_root": environ.get("INPUT_REMOTE_ROOT") or "/var/app",
        "remote_user": environ.get("REMOTE_USER") or "ubuntu",
        "ssh_key_path": environ.get("SSH_KEY_PATH") or "/tmp/deploy_key",
        "deploy_timeout": int(environ.get("INPUT_DEPLOY_TIMEOUT") or "600"),
        "push_retries": int(environ.get("INPUT_PUSH_RETRIES") or "3"),
        "debug_session": environ.get("INPUT_DEBUG_SESSION") == "true",
        "health_check_path": environ.get("INPUT_HEALTH_CHECK", "/up"),
        "app_env": parse_app_env(environ.get("APP_ENV_VARS", "")),
    }


def load_config(path: str = CONFIG_PATH, pr_number: Optional[int] = None) -> PipelineConfig:
    """Load a config written by build_config; pr_number overrides the file."""
    with open(path) as f:
        data = json.load(f)
    if pr_number is not None:
        data["pr_number"] = pr_number
    data["pr_number"] = parse_pr_number(data.get("pr_number"))
    if not data.get("repository"):
        raise ValueError("Config is missing 'repository' (owner/name)")
    known = set(PipelineConfig.__dataclass_fields__)
    return PipelineConfig(**{k: v for k, v in data.items() if k in known})


def main():
    try:
        config = build_config(os.environ)
    except ValueError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)

    with open(CONFIG_PATH, "w") as f:
        json.dump(config, f, indent=2)

    print("Configuration:")
    for k, v in config.items():
        if k == "app_env":
            v = ", ".join(v) or "(none)"
        print(f"  {k}: {v}")


if __name__ == "__main__":
    main()
