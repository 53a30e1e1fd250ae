import json
import os

import pytest
from pydantic import ValidationError

from lso.models import ProbeSpec, RuleSpec, SecretBundleSpec, StackSpec, UnitSpec, load_rules, load_stack

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_unit_name_validation():
    with pytest.raises(ValidationError):
        UnitSpec(name="Bad_Name", kind="process", command=["true"])
    assert UnitSpec(name="ui-citizen", kind="process", command=["true"]).name == "ui-citizen"


def test_command_string_is_split():
    u = UnitSpec(name="api", kind="process", command="uvicorn app:app --port 4000")
    assert u.command == ["uvicorn", "app:app", "--port", "4000"]


def test_kind_specific_requirements():
    with pytest.raises(ValidationError):
        UnitSpec(name="db", kind="container")
    with pytest.raises(ValidationError):
        UnitSpec(name="api", kind="process")
    with pytest.raises(ValidationError):
        UnitSpec(name="api", kind="process", command=["x"], depends_on=["api"])


def test_probe_target_rules():
    assert ProbeSpec(protocol="command", target="pg_isready -U app").target == ["pg_isready", "-U", "app"]
    with pytest.raises(ValidationError):
        ProbeSpec(protocol="http")
    with pytest.raises(ValidationError):
        ProbeSpec(protocol="http", target="localhost:4000/health")
    with pytest.raises(ValidationError):
        ProbeSpec(protocol="tcp", target="localhost")


def test_secret_bundle_default_substitutions():
    b = SecretBundleSpec(
        name="db", namespace="ns", secret_name="pg", keys=["db-user", "password"], destination="out/db.env"
    )
    assert b.substitutions == {"DB_USER": "db-user", "PASSWORD": "password"}


def test_rule_needs_exactly_one_disposition():
    with pytest.raises(ValidationError):
        RuleSpec(path="/x")
    with pytest.raises(ValidationError):
        RuleSpec(path="/x", proxy_to="api", mock={})
    with pytest.raises(ValidationError):
        RuleSpec(path="x", mock={})
    with pytest.raises(ValidationError):
        RuleSpec(path="/x", method="BREW", mock={})
    assert RuleSpec(path="/x", method="get", mock={}).method == "GET"


def test_stack_cross_references():
    units = [{"name": "api", "kind": "process", "command": ["x"], "secrets": ["missing"]}]
    with pytest.raises(ValidationError):
        StackSpec.model_validate({"units": units})
    with pytest.raises(ValidationError):
        StackSpec.model_validate({"units": [units[0] | {"secrets": []}] * 2})
    with pytest.raises(ValidationError):
        StackSpec.model_validate({"gateway_unit": "gateway", "units": [units[0] | {"secrets": []}]})


def test_example_files_load():
    stack = load_stack(os.path.join(EXAMPLES, "stack.json"))
    assert stack.gateway_unit == "gateway"
    assert {b.name for b in stack.secrets} == {"db-credentials", "api-config"}
    rules = load_rules(os.path.join(EXAMPLES, "rules.json"))
    assert all(r.name for r in rules)


def test_rules_file_accepts_bare_list(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([{"path": "*", "mock": {"status": 404}}]))
    assert load_rules(path)[0].mock.status == 404
