import subprocess
from datetime import datetime, timezone

import pytest

from build_image import (
    MachineImage,
    build_image,
    image_name,
    parse_artifact_id,
    render_packer_template,
)
from environment_definitions import ImageSpec
from pipeline_errors import ImageBuildFailure

BUILT_AT = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
PACKER_OUTPUT = """\
1792396800,,ui,say,==> amazon-ebs: Provisioning with shell script
1792397100,amazon-ebs,artifact-count,1
1792397100,amazon-ebs,artifact,0,builder-id,mitchellh.amazonebs
1792397100,amazon-ebs,artifact,0,id,us-east-1:ami-0123456789abcdef0
1792397100,amazon-ebs,artifact,0,end
"""


@pytest.fixture
def spec(tmp_path):
    script = tmp_path / "provision.sh"
    script.write_text("#!/bin/sh\necho provisioning\n")
    return ImageSpec(name_prefix="staging-web", base_image_id="ami-base",
                     region="us-east-1", instance_type="t3.micro",
                     provisioning_script=str(script))


def test_image_name():
    assert image_name("staging-web", BUILT_AT) == f"staging-web-{int(BUILT_AT.timestamp())}"


def test_packer_template(spec):
    template = render_packer_template(spec, "staging-web-1")

    builder = template["builders"][0]
    assert builder["source_ami"] == "ami-base"
    assert builder["ami_name"] == "staging-web-1"
    assert builder["ssh_username"] == "ubuntu"
    assert template["provisioners"] == [{"type": "shell", "script": spec.provisioning_script}]


class TestArtifactId:
    def test_single_region(self):
        assert parse_artifact_id(PACKER_OUTPUT) == "ami-0123456789abcdef0"

    def test_multi_region(self):
        line = "1,amazon-ebs,artifact,0,id,us-east-1:ami-aaa%!(PACKER_COMMA)eu-west-1:ami-bbb"

        assert parse_artifact_id(line) == "ami-aaa"

    def test_missing(self):
        assert parse_artifact_id("1,,ui,error,Build errored") is None


class TestBuildImage:
    def test_success(self, spec, runner):
        runner.on("packer", stdout=PACKER_OUTPUT)

        image = build_image(spec, built_at=BUILT_AT, run=runner)

        assert image == MachineImage(name=image_name("staging-web", BUILT_AT),
                                     image_id="ami-0123456789abcdef0",
                                     region="us-east-1")
        cmd, kwargs = runner.calls[0]
        assert cmd[:4] == ["packer", "build", "-machine-readable", "-color=false"]
        assert cmd[-1].endswith("image.json")
        assert kwargs["timeout"] > 0

    def test_provisioning_failure_is_not_retried(self, spec, runner):
        runner.on("packer", returncode=1,
                  stderr="Script exited with non-zero exit status: 100")

        with pytest.raises(ImageBuildFailure, match="non-zero exit status"):
            build_image(spec, built_at=BUILT_AT, run=runner)
        assert len(runner.calls) == 1

    def test_missing_provisioning_script(self, spec, runner, tmp_path):
        spec = ImageSpec(name_prefix="p", base_image_id="ami-base", region="us-east-1",
                         instance_type="t3.micro",
                         provisioning_script=str(tmp_path / "missing.sh"))

        with pytest.raises(ImageBuildFailure, match="not found"):
            build_image(spec, run=runner)
        assert runner.calls == []

    def test_no_artifact(self, spec, runner):
        runner.on("packer", stdout="1,,ui,say,Build finished")

        with pytest.raises(ImageBuildFailure, match="no artifact"):
            build_image(spec, built_at=BUILT_AT, run=runner)

    def test_timeout(self, spec, runner):
        runner.on("packer", raises=subprocess.TimeoutExpired("packer", 3600))

        with pytest.raises(ImageBuildFailure, match="timed out"):
            build_image(spec, built_at=BUILT_AT, run=runner)
