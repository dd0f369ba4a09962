#!/usr/bin/env python3
"""
Teardown of one pull request's staging environment.

Never run automatically: staging environments stay up until someone
dispatches this explicitly.

Order:
1. Remove extra_staging_PR_<n>.tf from the staging Terraform directory
2. terraform init/validate/plan (the plan destroys the PR's resources)
3. terraform apply
4. Delete the environment's state record
5. Commit and push the removal to the state branch
6. Comment on the PR

Usage:
    python3 scripts/build_config.py
    python3 scripts/teardown_pr_staging.py --config /tmp/pipeline-config.json
"""
import argparse
import os
import sys
from typing import Optional

from build_config import CONFIG_PATH, PipelineConfig, load_config
from environment_definitions import pr_resource
from git_ops import Git
from github_services import GitHubIssueComments, IssueCommentService
from pipeline_errors import PlanFailure
from state_store import StateStore
from status_comments import destroyed_comment
from terraform_cli import ApplyResult, Terraform


def teardown(config: PipelineConfig, *, comments: IssueCommentService,
             terraform: Terraform, store: StateStore, git: Git,
             token: Optional[str] = None) -> ApplyResult:
    resource = pr_resource(config.pr_number, config.terraform_dir)
    name = resource.environment_name

    print(f"\n{'='*60}")
    print(f"Tearing down: {name} ({config.repository})")
    print(f"{'='*60}\n")

    print("[1/6] Removing resource file...")
    if resource.path.exists():
        resource.path.unlink()
        print(f"  Removed: {resource.path}")
    else:
        print(f"  {resource.path} not found. Already removed.")

    print("[2/6] Planning...")
    outcome = terraform.init()
    if outcome.success:
        outcome = terraform.validate()
    if not outcome.success:
        raise PlanFailure("terraform init/validate failed", outcome.detail)
    plan = terraform.plan()
    if not plan.success:
        raise PlanFailure("terraform plan failed", plan.detail)

    print("[3/6] Applying...")
    result = terraform.apply(plan)

    print("[4/6] Deleting state record...")
    entry = store.get(name)
    if entry:
        store.delete(name, entry.version)
        print(f"  Deleted {name} (was version {entry.version})")
    else:
        print(f"  No state record for {name}")

    print("[5/6] Persisting removal...")
    if token:
        git.set_remote_token(config.repository, token)
    git.configure_identity(config.actor)
    if git.commit_paths([resource.path, store.path_for(name)],
                        f"Remove terraform resource files for PR #{config.pr_number}"):
        git.push_with_retry(config.state_branch, config.push_retries)

    print("[6/6] Commenting on PR...")
    comments.post(config.pr_number, destroyed_comment(config.pr_number))

    print(f"\n  Teardown of {name} complete "
          f"({result.destroyed} destroyed)")
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Destroy the staging environment of a pull request")
    parser.add_argument("--config", default=CONFIG_PATH,
                        help="Pipeline config JSON written by build_config.py")
    parser.add_argument("--pr-number", default=None,
                        help="Override the PR number from the config")
    args = parser.parse_args()

    try:
        config = load_config(args.config, pr_number=args.pr_number)
        teardown(
            config,
            comments=GitHubIssueComments(config.repository),
            terraform=Terraform(config.terraform_dir),
            store=StateStore.for_terraform_dir(config.terraform_dir),
            git=Git("."),
            token=os.environ.get("GITHUB_TOKEN"),
        )
    except (OSError, ValueError, RuntimeError) as e:
        print(f"\nFATAL: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
