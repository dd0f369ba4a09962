#!/usr/bin/env python3
"""
Machine image build for the staging and production instances.

Launches the base image with Packer, runs the provisioning script on it,
and captures the result as a new image named <prefix>-<epoch seconds>.
A failing provisioning script aborts the build and leaves no image; the
failure is reported, never retried.

Usage:
    python3 scripts/build_image.py \\
        --catalog infra/environments.yml \\
        [--output /tmp/image-output.json]
"""
import argparse
import json
import os
import subprocess
import sys
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from environment_definitions import ImageSpec, load_catalog
from pipeline_errors import ImageBuildFailure

PACKER_TIMEOUT = 3600


@dataclass(frozen=True)
class MachineImage:
    name: str
    image_id: str
    region: str


def image_name(prefix: str, built_at: datetime) -> str:
    return f"{prefix}-{int(built_at.timestamp())}"


def render_packer_template(spec: ImageSpec, name: str) -> dict:
    return {
        "builders": [{
            "type": "amazon-ebs",
            "region": spec.region,
            "source_ami": spec.base_image_id,
            "instance_type": spec.instance_type,
            "ssh_username": spec.ssh_username,
            "ami_name": name,
            "tags": {"Name": name, "BaseImage": spec.base_image_id},
        }],
        "provisioners": [{
            "type": "shell",
            "script": os.path.abspath(spec.provisioning_script),
        }],
    }


def parse_artifact_id(output: str) -> Optional[str]:
    """Find the AMI id in `packer build -machine-readable` output.

    Lines look like: <ts>,<target>,artifact,0,id,us-east-1:ami-0abc
    """
    for line in output.splitlines():
        parts = line.split(",")
        if len(parts) >= 6 and parts[2] == "artifact" and parts[4] == "id":
            value = ",".join(parts[5:])
            # Multi-region builds list region:ami pairs separated by "%!(PACKER_COMMA)"
            first = value.split("%!(PACKER_COMMA)")[0]
            return first.split(":", 1)[-1]
    return None


def build_image(spec: ImageSpec, *, built_at: Optional[datetime] = None,
                run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> MachineImage:
    built_at = built_at or datetime.now(timezone.utc)
    name = image_name(spec.name_prefix, built_at)
    if not os.path.exists(spec.provisioning_script):
        raise ImageBuildFailure(
            f"Provisioning script not found: {spec.provisioning_script}")

    print(f"\n{'='*60}")
    print(f"Building image: {name}")
    print(f"Base image: {spec.base_image_id} ({spec.region}, {spec.instance_type})")
    print(f"Provisioning script: {spec.provisioning_script}")
    print(f"{'='*60}\n")

    with tempfile.TemporaryDirectory() as tmp:
        template_path = os.path.join(tmp, "image.json")
        with open(template_path, "w") as f:
            json.dump(render_packer_template(spec, name), f, indent=2)
        cmd = ["packer", "build", "-machine-readable", "-color=false", template_path]
        print(f"  $ {' '.join(cmd)}")
        try:
            result = run(cmd, capture_output=True, text=True, timeout=PACKER_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise ImageBuildFailure(f"packer build timed out after {PACKER_TIMEOUT}s")

    if result.returncode != 0:
        tail = "\n".join((result.stdout or "").strip().splitlines()[-20:])
        raise ImageBuildFailure(
            f"packer build failed (rc={result.returncode}): "
            f"{(result.stderr or '').strip() or tail}")

    image_id = parse_artifact_id(result.stdout or "")
    if not image_id:
        raise ImageBuildFailure("packer build succeeded but reported no artifact id")

    print(f"  Image created: {name} ({image_id})")
    return MachineImage(name=name, image_id=image_id, region=spec.region)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Build the staging/production machine image with Packer")
    parser.add_argument("--catalog", default="infra/environments.yml",
                        help="Path to the YAML environment catalog")
    parser.add_argument("--output", default=None,
                        help="Path to write JSON output (default: stdout)")
    args = parser.parse_args()

    try:
        image = build_image(load_catalog(args.catalog).image)
    except (OSError, RuntimeError) as e:
        print(f"\nFATAL: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        with open(args.output, "w") as f:
            json.dump(asdict(image), f, indent=2)
        print(f"\nOutput written to {args.output}")
    else:
        json.dump(asdict(image), sys.stdout, indent=2)
        print()


if __name__ == "__main__":
    main()
