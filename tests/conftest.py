from pathlib import Path

import pytest

from build_config import PipelineConfig
from environment_definitions import EnvironmentDefinition
from fakes import FakeRunner

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def staging():
    return EnvironmentDefinition(
        name="staging",
        image_id="ami-0abc1234",
        instance_type="t3.micro",
        security_groups=["sg-0123456789abcdef0"],
        key_name="staging-deploy",
        public_key="ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITest staging-deploy",
        dns_output="staging_dns",
        fresh_instance=True,
    )


@pytest.fixture
def terraform_dir(tmp_path):
    path = tmp_path / "infra" / "instances" / "staging"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def config(terraform_dir):
    return PipelineConfig(
        pr_number=42,
        repository="acme/web",
        actor="octocat",
        event_name="workflow_dispatch",
        terraform_dir=str(terraform_dir),
    )


@pytest.fixture
def catalog_data():
    return {
        "image": {
            "name_prefix": "staging-web",
            "base_image_id": "ami-base",
            "region": "us-east-1",
            "instance_type": "t3.micro",
            "provisioning_script": "infra/image/provision.sh",
        },
        "environments": {
            "staging": {
                "instance_type": "t3.micro",
                "security_groups": ["sg-1"],
                "key_name": "staging-deploy",
                "public_key": "ssh-ed25519 AAAA staging\n",
                "dns_output": "staging_dns",
                "fresh_instance": True,
            },
            "production": {
                "instance_type": "t3.small",
                "security_groups": ["sg-2"],
                "key_name": "production-deploy",
                "public_key": "ssh-ed25519 AAAA production",
                "dns_output": "production_dns",
            },
        },
    }
