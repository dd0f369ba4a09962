import json

import pytest

import create_staging_resource
from conftest import REPO_ROOT
from create_staging_resource import parse_resource_id


@pytest.mark.parametrize("value,expected", [("PR_42", 42), ("42", 42), (" PR_7\n", 7)])
def test_parse_resource_id(value, expected):
    assert parse_resource_id(value) == expected


@pytest.mark.parametrize("value", ["PR_0", "PR_x", "pr_42", "PR-42", ""])
def test_parse_resource_id_rejects(value):
    with pytest.raises(ValueError):
        parse_resource_id(value)


def test_prints_only_json_on_stdout(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", [
        "create_staging_resource.py", "PR_42",
        "--catalog", str(REPO_ROOT / "infra" / "environments.yml"),
        "--terraform-dir", str(tmp_path),
    ])

    create_staging_resource.main()

    out = capsys.readouterr().out
    assert json.loads(out) == {"resource_file": "extra_staging_PR_42.tf",
                               "terraform_expected_output": "staging_dns_PR_42"}
    assert (tmp_path / "extra_staging_PR_42.tf").exists()


def test_bad_resource_id_exits(monkeypatch, capsys):
    monkeypatch.setattr("sys.argv", ["create_staging_resource.py", "staging"])

    with pytest.raises(SystemExit) as exc:
        create_staging_resource.main()

    assert exc.value.code == 1
    assert "FATAL" in capsys.readouterr().err
