#!/usr/bin/env python3
"""
Write the Terraform file for one pull request's staging instance.

Prints the generated file name and the Terraform output holding the
instance address as JSON on stdout, for use by later workflow steps:

    {"resource_file": "extra_staging_PR_42.tf",
     "terraform_expected_output": "staging_dns_PR_42"}

Usage:
    python3 scripts/create_staging_resource.py PR_42 \\
        [--catalog infra/environments.yml] \\
        [--terraform-dir infra/instances/staging]
"""
import argparse
import json
import re
import sys
from contextlib import redirect_stdout

from environment_definitions import create_pr_resource, load_catalog

RESOURCE_ID_RE = re.compile(r"^(?:PR_)?(\d+)$")


def parse_resource_id(value: str) -> int:
    """Accept PR_<n> or a bare number; returns n."""
    m = RESOURCE_ID_RE.match(value.strip())
    if not m or int(m.group(1)) <= 0:
        raise ValueError(f"Expected PR_<number>, got {value!r}")
    return int(m.group(1))


def main():
    parser = argparse.ArgumentParser(
        description="Create the staging resource file for a pull request")
    parser.add_argument("resource_id", help="PR_<number>")
    parser.add_argument("--catalog", default="infra/environments.yml",
                        help="Path to the YAML environment catalog")
    parser.add_argument("--terraform-dir", default="infra/instances/staging",
                        help="Staging Terraform directory")
    args = parser.parse_args()

    try:
        pr_number = parse_resource_id(args.resource_id)
        staging = load_catalog(args.catalog).environment("staging")
        # stdout carries only the JSON result
        with redirect_stdout(sys.stderr):
            resource = create_pr_resource(staging, pr_number, args.terraform_dir)
    except (OSError, ValueError, RuntimeError) as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(resource.as_output()))


if __name__ == "__main__":
    main()
