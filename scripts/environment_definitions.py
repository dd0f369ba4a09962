#!/usr/bin/env python3
"""
Environment definitions for the staging and production instances.

The environment catalog (infra/environments.yml) is the source of truth;
this module renders it to Terraform files:

- <out>/<env>/main.tf for every long-lived environment
- extra_staging_PR_<n>.tf for every pull request environment

Each environment gets an SSH key pair, an instance bound to the shared
image id, its security groups, and an exported DNS output. Environments
marked fresh_instance bind a random_id to the image id (keepers), and the
instance reads its AMI from those keepers, so a new image replaces the
instance instead of mutating it in place.

Usage:
    python3 scripts/environment_definitions.py \\
        --catalog infra/environments.yml \\
        --out infra/instances \\
        [--image-output /tmp/image-output.json]
"""
import argparse
import hashlib
import json
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from pipeline_errors import DefinitionError

AWS_PROVIDER_VERSION = "~> 5.0"
RANDOM_PROVIDER_VERSION = "~> 3.5"
TERRAFORM_VERSION = "~> 1.5"
# Written next to each rendered main.tf; records the image it was rendered with.
IMAGE_FILE = "image.json"


@dataclass(frozen=True)
class ImageSpec:
    name_prefix: str
    base_image_id: str
    region: str
    instance_type: str
    provisioning_script: str
    ssh_username: str = "ubuntu"


@dataclass(frozen=True)
class EnvironmentDefinition:
    name: str
    image_id: str
    instance_type: str
    security_groups: List[str]
    key_name: str
    public_key: str
    dns_output: str
    region: str = "us-east-1"
    fresh_instance: bool = False


@dataclass(frozen=True)
class Catalog:
    image: ImageSpec
    environments: Dict[str, EnvironmentDefinition]
    terraform: Dict[str, str] = field(default_factory=dict)

    def environment(self, name: str) -> EnvironmentDefinition:
        try:
            return self.environments[name]
        except KeyError:
            raise DefinitionError(f"Environment '{name}' not found in catalog")

    def backend_for(self, name: str) -> Optional[Dict[str, str]]:
        org = self.terraform.get("organization")
        if not org:
            return None
        prefix = self.terraform.get("workspace_prefix", "")
        return {"organization": org, "workspace": f"{prefix}{name}"}


@dataclass(frozen=True)
class PrResource:
    pr_number: int
    resource_id: str
    resource_file: str
    output_name: str
    path: Path

    @property
    def environment_name(self) -> str:
        return f"staging-{self.resource_id}"

    def as_output(self) -> dict:
        return {
            "resource_file": self.resource_file,
            "terraform_expected_output": self.output_name,
        }


# ---------------------------------------------------------------------------
# Catalog loading
# ---------------------------------------------------------------------------

IMAGE_KEYS = ("name_prefix", "base_image_id", "region", "instance_type",
              "provisioning_script")
ENV_KEYS = ("instance_type", "security_groups", "key_name", "public_key",
            "dns_output")


def _require(section, keys, where):
    missing = [k for k in keys if section.get(k) in (None, "")]
    if missing:
        raise DefinitionError(f"{where}: missing {', '.join(missing)}")


def parse_catalog(data: dict) -> Catalog:
    if not isinstance(data, dict):
        raise DefinitionError("Catalog must be a mapping")
    image_data = data.get("image") or {}
    _require(image_data, IMAGE_KEYS, "image")
    image = ImageSpec(**{k: str(v) for k, v in image_data.items()
                         if k in ImageSpec.__dataclass_fields__})

    environments = {}
    seen_outputs = {}
    for name, env in (data.get("environments") or {}).items():
        env = env or {}
        _require(env, ENV_KEYS, f"environments.{name}")
        dns_output = env["dns_output"]
        if dns_output in seen_outputs:
            raise DefinitionError(
                f"environments.{name}: dns_output '{dns_output}' already used "
                f"by '{seen_outputs[dns_output]}'")
        seen_outputs[dns_output] = name
        environments[name] = EnvironmentDefinition(
            name=name,
            image_id=env.get("image_id") or image.base_image_id,
            instance_type=env["instance_type"],
            security_groups=list(env["security_groups"]),
            key_name=env["key_name"],
            public_key=env["public_key"].strip(),
            dns_output=dns_output,
            region=env.get("region") or image.region,
            fresh_instance=bool(env.get("fresh_instance", False)),
        )
    if not environments:
        raise DefinitionError("Catalog defines no environments")
    return Catalog(image=image, environments=environments,
                   terraform=dict(data.get("terraform") or {}))


def load_catalog(path) -> Catalog:
    with open(path) as f:
        return parse_catalog(yaml.safe_load(f))


def with_image(catalog: Catalog, image_id: str) -> Catalog:
    """Point every environment at a newly built image."""
    envs = {name: replace(env, image_id=image_id)
            for name, env in catalog.environments.items()}
    return replace(catalog, environments=envs)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def identity_token(environment: str, image_id: str) -> str:
    """Fresh-instance marker: changes whenever the image id changes."""
    digest = hashlib.sha256(f"{environment}:{image_id}".encode()).hexdigest()
    return digest[:16]


def pr_resource(pr_number: int, terraform_dir) -> PrResource:
    resource_id = f"PR_{pr_number}"
    resource_file = f"extra_staging_{resource_id}.tf"
    return PrResource(
        pr_number=pr_number,
        resource_id=resource_id,
        resource_file=resource_file,
        output_name=f"staging_dns_{resource_id}",
        path=Path(terraform_dir) / resource_file,
    )


# ---------------------------------------------------------------------------
# HCL rendering
# ---------------------------------------------------------------------------

def _str(value: str) -> str:
    """HCL string literal; template sequences are escaped."""
    return json.dumps(value).replace("${", "$${").replace("%{", "%%{")


def _list(values) -> str:
    return "[" + ", ".join(_str(v) for v in values) + "]"


def _settings_block(backend: Optional[Dict[str, str]]) -> List[str]:
    lines = ["terraform {", f"  required_version = {_str(TERRAFORM_VERSION)}", ""]
    if backend:
        lines += [
            "  cloud {",
            f"    organization = {_str(backend['organization'])}",
            "    workspaces {",
            f"      name = {_str(backend['workspace'])}",
            "    }",
            "  }",
            "",
        ]
    lines += [
        "  required_providers {",
        "    aws = {",
        '      source  = "hashicorp/aws"',
        f"      version = {_str(AWS_PROVIDER_VERSION)}",
        "    }",
        "    random = {",
        '      source  = "hashicorp/random"',
        f"      version = {_str(RANDOM_PROVIDER_VERSION)}",
        "    }",
        "  }",
        "}",
    ]
    return lines


def _random_id_block(label: str, environment: str, image_ref: str,
                     image_id: str) -> List[str]:
    return [
        f'resource "random_id" "{label}" {{',
        "  keepers = {",
        f"    image_id = {image_ref}",
        f"    identity = {_str(identity_token(environment, image_id))}",
        "  }",
        "",
        "  byte_length = 8",
        "}",
    ]


def render_environment(defn: EnvironmentDefinition,
                       backend: Optional[Dict[str, str]] = None) -> str:
    label = defn.name.replace("-", "_")
    lines = _settings_block(backend)
    lines += [
        "",
        'provider "aws" {',
        f"  region = {_str(defn.region)}",
        "}",
        "",
        'variable "image_id" {',
        "  type    = string",
        f"  default = {_str(defn.image_id)}",
        "}",
        "",
        f'resource "aws_key_pair" "{label}" {{',
        f"  key_name   = {_str(defn.key_name)}",
        f"  public_key = {_str(defn.public_key)}",
        "}",
        "",
    ]
    if defn.fresh_instance:
        lines += _random_id_block(label, defn.name, "var.image_id", defn.image_id)
        lines.append("")
        ami = f"random_id.{label}.keepers.image_id"
        name_tag = _str(defn.name)[:-1] + "-${random_id." + label + '.hex}"'
    else:
        ami = "var.image_id"
        name_tag = _str(defn.name)
    lines += [
        f'resource "aws_instance" "{label}" {{',
        f"  ami                    = {ami}",
        f"  instance_type          = {_str(defn.instance_type)}",
        f"  key_name               = aws_key_pair.{label}.key_name",
        f"  vpc_security_group_ids = {_list(defn.security_groups)}",
        "",
        "  tags = {",
        f"    Name        = {name_tag}",
        f"    Environment = {_str(defn.name)}",
        "  }",
        "}",
        "",
        f'output "{defn.dns_output}" {{',
        f"  value = aws_instance.{label}.public_dns",
        "}",
    ]
    return "\n".join(lines) + "\n"


def render_pr_resource(defn: EnvironmentDefinition, resource: PrResource) -> str:
    """Per-PR definition living next to the staging main.tf.

    References staging's key pair and var.image_id, so the file is only
    valid inside the staging directory.
    """
    label = f"staging_{resource.resource_id}"
    staging_label = defn.name.replace("-", "_")
    lines = _random_id_block(label, resource.environment_name, "var.image_id",
                             defn.image_id)
    lines += [
        "",
        f'resource "aws_instance" "{label}" {{',
        f"  ami                    = random_id.{label}.keepers.image_id",
        f"  instance_type          = {_str(defn.instance_type)}",
        f"  key_name               = aws_key_pair.{staging_label}.key_name",
        f"  vpc_security_group_ids = {_list(defn.security_groups)}",
        "",
        "  tags = {",
        f'    Name        = "staging-{resource.resource_id}-${{random_id.{label}.hex}}"',
        f"    Environment = {_str(resource.environment_name)}",
        f'    PullRequest = "{resource.pr_number}"',
        "  }",
        "}",
        "",
        f'output "{resource.output_name}" {{',
        f"  value = aws_instance.{label}.public_dns",
        "}",
    ]
    return "\n".join(lines) + "\n"


def _write_if_changed(path: Path, content: str) -> bool:
    if path.exists() and path.read_text() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return True


def create_pr_resource(defn: EnvironmentDefinition, pr_number: int,
                       terraform_dir) -> PrResource:
    """Write extra_staging_PR_<n>.tf; repeat runs leave the file untouched."""
    resource = pr_resource(pr_number, terraform_dir)
    if _write_if_changed(resource.path, render_pr_resource(defn, resource)):
        print(f"  Created: {resource.path}")
    else:
        print(f"  Already up to date: {resource.path}")
    return resource


def deployed_definition(catalog: Catalog, name: str,
                        terraform_dir) -> EnvironmentDefinition:
    """The environment as last rendered into terraform_dir.

    The image workflow renders newly built images without touching the
    catalog, so the image id comes from the rendered directory when it
    has one.
    """
    defn = catalog.environment(name)
    path = Path(terraform_dir) / IMAGE_FILE
    if not path.exists():
        return defn
    with open(path) as f:
        image_id = json.load(f).get("image_id")
    if not image_id:
        raise DefinitionError(f"{path}: missing image_id")
    return replace(defn, image_id=image_id)


def write_environments(catalog: Catalog, out_dir,
                       image_id: Optional[str] = None) -> List[Path]:
    if image_id:
        catalog = with_image(catalog, image_id)
    written = []
    for name, defn in catalog.environments.items():
        path = Path(out_dir) / name / "main.tf"
        content = render_environment(defn, catalog.backend_for(name))
        _write_if_changed(path.parent / IMAGE_FILE,
                          json.dumps({"image_id": defn.image_id}, indent=2) + "\n")
        if _write_if_changed(path, content):
            print(f"  {name}: wrote {path}")
        else:
            print(f"  {name}: unchanged ({path})")
        print(f"    image={defn.image_id} identity={identity_token(name, defn.image_id)}")
        written.append(path)
    return written


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Render Terraform definitions from the environment catalog")
    parser.add_argument("--catalog", default="infra/environments.yml",
                        help="Path to the YAML environment catalog")
    parser.add_argument("--out", default="infra/instances",
                        help="Directory receiving <env>/main.tf")
    parser.add_argument("--image-output", default=None,
                        help="build_image.py output JSON; its image_id "
                             "replaces the catalog image for every environment")
    args = parser.parse_args()

    try:
        catalog = load_catalog(args.catalog)
        if args.image_output:
            with open(args.image_output) as f:
                image = json.load(f)
            print(f"Using image {image['name']} ({image['image_id']})")
            image_id = image["image_id"]
        else:
            image_id = None
        print(f"Rendering {len(catalog.environments)} environment(s) into {args.out}...")
        write_environments(catalog, args.out, image_id)
    except (OSError, KeyError, RuntimeError) as e:
        print(f"\nFATAL: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
