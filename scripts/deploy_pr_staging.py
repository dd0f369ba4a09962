#!/usr/bin/env python3
"""
Ephemeral staging deployment for a single pull request.

Stages (a run ends in Reported, or in Failed from any stage):

  Validating -> ResourceFileCreated -> Planned -> Applied -> Deployed -> Reported

1. Validate the PR number against this repository, get its source branch
2. Write extra_staging_PR_<n>.tf next to the staging definition
3. terraform init/validate/plan; the plan is always posted on the PR,
   and only then does a failed plan halt the run
4. terraform apply (fatal on failure, never retried) and read the
   instance address from the staging_dns_PR_<n> output. If the output
   cannot be read after a successful apply, step 5 still runs first.
5. Record the environment in the state store, commit the definition and
   record, push to the state branch (rejected pushes are rebased and
   retried). This happens before the PR checkout, so provisioned
   resources are never lost track of.
6. Check out the PR, rsync the app subtree, restart pm2 and nginx
7. Comment the staging URL on the PR

Environments are never destroyed here; see teardown_pr_staging.py.

Usage:
    python3 scripts/build_config.py
    python3 scripts/deploy_pr_staging.py --config /tmp/pipeline-config.json
"""
import argparse
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from build_config import CONFIG_PATH, PipelineConfig, load_config
from environment_definitions import (
    EnvironmentDefinition,
    PrResource,
    create_pr_resource,
    deployed_definition,
    identity_token,
    load_catalog,
    pr_resource,
)
from git_ops import Git, GitError
from github_services import (
    GitHubIssueComments,
    GitHubPullRequests,
    IssueCommentService,
    PullRequest,
    PullRequestService,
)
from pipeline_errors import (
    ApplyFailure,
    DeploymentFailure,
    InvalidRequest,
    PersistenceConflict,
    PipelineError,
    PlanFailure,
)
from remote_deploy import RemoteDeployer
from state_store import EnvironmentRecord, StateStore
from status_comments import deployed_comment, failure_comment, plan_comment
from terraform_cli import ApplyResult, PlanResult, Terraform


class Stage(Enum):
    VALIDATING = "Validating"
    RESOURCE_FILE_CREATED = "ResourceFileCreated"
    PLANNED = "Planned"
    APPLIED = "Applied"
    DEPLOYED = "Deployed"
    REPORTED = "Reported"
    FAILED = "Failed"


@dataclass
class PipelineRun:
    pr_number: int
    stage: Stage = Stage.VALIDATING
    history: List[Stage] = field(default_factory=list)
    pull_request: Optional[PullRequest] = None
    resource: Optional[PrResource] = None
    plan: Optional[PlanResult] = None
    applied: Optional[ApplyResult] = None
    address: str = ""
    persisted: bool = False
    failed_step: str = ""
    error: Optional[PipelineError] = None
    comments: List[str] = field(default_factory=list)

    def advance(self, stage: Stage) -> None:
        self.history.append(self.stage)
        self.stage = stage

    def fail(self, step: str, error: PipelineError) -> None:
        self.failed_step = step
        self.error = error
        self.advance(Stage.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.REPORTED


def validate_pull_request(pulls: PullRequestService, number, repository: str) -> PullRequest:
    """Resolve number on repository; raises InvalidRequest otherwise."""
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise InvalidRequest(f"PR number must be a positive integer, got {number!r}")
    pr = pulls.get(number)
    if pr is None:
        raise InvalidRequest(f"Pull request #{number} not found in {repository}")
    if pr.number != number:
        raise InvalidRequest("Pull request is not open or number is not valid!")
    if pr.repository.lower() != repository.lower():
        raise InvalidRequest(
            f"Pull request #{number} belongs to {pr.repository}, not {repository}")
    return pr


class StagingPipeline:
    def __init__(self, config: PipelineConfig, staging: EnvironmentDefinition, *,
                 pulls: PullRequestService, comments: IssueCommentService,
                 terraform: Terraform, store: StateStore, git: Git,
                 deployer: RemoteDeployer, token: Optional[str] = None):
        self.config = config
        self.staging = staging
        self.pulls = pulls
        self.comments = comments
        self.terraform = terraform
        self.store = store
        self.git = git
        self.deployer = deployer
        self.token = token

    def steps(self):
        return [
            ("Validating pull request", self.validate),
            ("Creating staging resource file", self.create_resource_file),
            ("Planning", self.plan),
            ("Applying", self.apply),
            ("Persisting definition", self.persist),
            ("Deploying", self.deploy),
            ("Reporting", self.report),
        ]

    def run(self) -> PipelineRun:
        run = PipelineRun(pr_number=self.config.pr_number)

        print(f"\n{'='*60}")
        print(f"Staging deployment: PR #{run.pr_number} ({self.config.repository})")
        print(f"Terraform dir: {self.config.terraform_dir}")
        print(f"{'='*60}")

        steps = self.steps()
        for i, (title, step) in enumerate(steps, 1):
            print(f"\n[{i}/{len(steps)}] {title}...")
            try:
                step(run)
            except PipelineError as e:
                run.fail(title, e)
                print(f"  Failed: {e}")
                self._report_failure(run)
                break

        if isinstance(run.error, DeploymentFailure) and self.config.debug_session:
            print("\nOpening debug session for manual recovery...")
            self.deployer.open_debug_session()
        return run

    # --- Stages -------------------------------------------------------------

    def validate(self, run: PipelineRun) -> None:
        pr = validate_pull_request(self.pulls, run.pr_number, self.config.repository)
        run.pull_request = pr
        print(f"  PR #{pr.number}: branch {pr.source_branch} ({pr.state})")

    def create_resource_file(self, run: PipelineRun) -> None:
        planned = pr_resource(run.pr_number, self.config.terraform_dir)
        self.store.ensure_address_available(planned.environment_name,
                                            planned.output_name)
        run.resource = create_pr_resource(self.staging, run.pr_number,
                                          self.config.terraform_dir)
        print(f"  Expected output: {run.resource.output_name}")
        run.advance(Stage.RESOURCE_FILE_CREATED)

    def plan(self, run: PipelineRun) -> None:
        init = self.terraform.init()
        if init.success:
            init = self.terraform.validate()
        if init.success:
            plan = self.terraform.plan()
        else:
            plan = PlanResult(success=False, detail=init.detail)
        run.plan = plan

        # Posted whether or not the plan succeeded.
        self._comment(run, plan_comment(init.outcome, plan, self.config.actor,
                                        self.config.event_name))
        if not plan.success:
            raise PlanFailure("terraform plan failed", plan.detail)
        run.advance(Stage.PLANNED)

    def apply(self, run: PipelineRun) -> None:
        run.applied = self.terraform.apply(run.plan)
        try:
            address = self.terraform.output(run.resource.output_name)
            if not address:
                raise ApplyFailure(f"Output '{run.resource.output_name}' is empty")
        except ApplyFailure:
            # The instance exists now; keep its definition on the state branch.
            try:
                self.persist(run)
            except PipelineError as e:
                print(f"  Warning: could not persist definition after apply: {e}")
            raise
        run.address = address
        print(f"  Staging address: {address}")
        run.advance(Stage.APPLIED)

    def persist(self, run: PipelineRun) -> None:
        resource = run.resource
        name = resource.environment_name
        record = EnvironmentRecord(
            name=name,
            image_id=self.staging.image_id,
            identity_token=identity_token(name, self.staging.image_id),
            address_output=resource.output_name,
            definition_file=resource.resource_file,
            pr_number=run.pr_number,
            address=run.address,
        )
        existing = self.store.get(name)
        if existing and existing.record == record:
            print(f"  State for {name} unchanged (version {existing.version})")
        else:
            version = self.store.put(record, existing.version if existing else 0)
            print(f"  State for {name} written (version {version})")

        try:
            if self.token:
                self.git.set_remote_token(self.config.repository, self.token)
            self.git.configure_identity(self.config.actor)
            committed = self.git.commit_paths(
                [resource.path, self.store.path_for(name)],
                f"Add terraform resource files for PR #{run.pr_number}")
            if committed:
                self.git.push_with_retry(self.config.state_branch,
                                         self.config.push_retries)
        except GitError as e:
            raise PersistenceConflict(f"Could not persist definition: {e}")
        run.persisted = True

    def deploy(self, run: PipelineRun) -> None:
        try:
            self.git.checkout_pull_request(run.pr_number)
        except GitError as e:
            raise DeploymentFailure(f"Checkout of PR #{run.pr_number} failed: {e}")
        app_env = {
            "STAGING_PR_NUMBER": str(run.pr_number),
            "STAGING_BRANCH": run.pull_request.source_branch,
        }
        app_env.update(self.config.app_env)
        self.deployer.deploy(run.address, self.config.app_dir,
                             self.config.remote_root, app_env=app_env,
                             health_check_path=self.config.health_check_path)
        run.advance(Stage.DEPLOYED)

    def report(self, run: PipelineRun) -> None:
        self._comment(run, deployed_comment(run.pr_number, run.address))
        run.advance(Stage.REPORTED)

    # --- Reporting ----------------------------------------------------------

    def _comment(self, run: PipelineRun, body: str) -> None:
        self.comments.post(run.pr_number, body)
        run.comments.append(body)

    def _report_failure(self, run: PipelineRun) -> None:
        # Invalid requests have no PR to comment on; plan failures were
        # already reported with the plan itself.
        if isinstance(run.error, (InvalidRequest, PlanFailure)):
            return
        detail = getattr(run.error, "detail", "") or str(run.error)
        body = failure_comment(run.pr_number, run.failed_step, detail,
                               self.config.actor, self.config.event_name)
        try:
            self._comment(run, body)
        except RuntimeError as e:
            print(f"  Warning: could not comment failure on PR #{run.pr_number}: {e}")


# ---------------------------------------------------------------------------
# CI outputs
# ---------------------------------------------------------------------------

def render_summary(run: PipelineRun) -> str:
    lines = ["### Staging deployment",
             f"- **pr**: #{run.pr_number}",
             f"- **stage**: {run.stage.value}"]
    if run.pull_request:
        lines.append(f"- **branch**: {run.pull_request.source_branch}")
    if run.resource:
        lines.append(f"- **resource_file**: {run.resource.resource_file}")
        lines.append(f"- **output**: {run.resource.output_name}")
    if run.plan:
        lines.append(f"- **plan**: {run.plan.outcome} ({run.plan.to_add} to add, "
                     f"{run.plan.to_change} to change, {run.plan.to_destroy} to destroy)")
    if run.applied:
        lines.append(f"- **apply**: {run.applied.added} added, {run.applied.changed} "
                     f"changed, {run.applied.destroyed} destroyed")
    if run.address:
        lines.append(f"- **url**: http://{run.address}")
    if run.error:
        lines.append(f"- **failed_step**: {run.failed_step}")
        lines.append(f"- **error**: {type(run.error).__name__}: {run.error}")
    return "\n".join(lines) + "\n"


def write_github_output(name: str, value: str) -> None:
    path = os.environ.get("GITHUB_OUTPUT")
    if path:
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{name}={value}\n")


def write_step_summary(text: str) -> None:
    path = os.environ.get("GITHUB_STEP_SUMMARY")
    if path:
        with open(path, "a", encoding="utf-8") as f:
            f.write(text + "\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_pipeline(config: PipelineConfig) -> StagingPipeline:
    staging = deployed_definition(load_catalog(config.catalog), "staging",
                                  config.terraform_dir)
    return StagingPipeline(
        config,
        staging,
        pulls=GitHubPullRequests(config.repository),
        comments=GitHubIssueComments(config.repository),
        terraform=Terraform(config.terraform_dir),
        store=StateStore.for_terraform_dir(config.terraform_dir),
        git=Git("."),
        deployer=RemoteDeployer(config.remote_user, config.ssh_key_path,
                                timeout=config.deploy_timeout),
        token=os.environ.get("GITHUB_TOKEN"),
    )


def main():
    parser = argparse.ArgumentParser(
        description="Provision and deploy an ephemeral staging environment for a PR")
    parser.add_argument("--config", default=CONFIG_PATH,
                        help="Pipeline config JSON written by build_config.py")
    parser.add_argument("--pr-number", default=None,
                        help="Override the PR number from the config")
    args = parser.parse_args()

    try:
        config = load_config(args.config, pr_number=args.pr_number)
    except ValueError as e:
        print(f"\nFATAL: InvalidRequest: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        run = build_pipeline(config).run()
    except (OSError, RuntimeError) as e:
        print(f"\nFATAL: {e}", file=sys.stderr)
        sys.exit(1)

    summary = render_summary(run)
    print(f"\n{summary}")
    write_step_summary(summary)
    if run.address:
        write_github_output("staging_address", run.address)

    if not run.succeeded:
        print(f"\nFATAL: {run.failed_step}: {type(run.error).__name__}: {run.error}",
              file=sys.stderr)
        sys.exit(1)

    print(f"{'='*60}")
    print(f"PR #{run.pr_number} deployed: http://{run.address}")
    print(f"{'='*60}\n")


if __name__ == "__main__":
    main()
