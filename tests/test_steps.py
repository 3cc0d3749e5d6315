"""Tests for step body parsing and template rendering."""

import pytest

from nodeward.core.errors import StepFetchError
from nodeward.provision.actions import render, render_all
from nodeward.provision.steps import (
    RunAction,
    ServiceActive,
    TrustDependenciesAction,
    fingerprint,
    parse_step_body,
)


class TestParseStepBody:
    """YAML → StepBody validation."""

    def test_typed_actions(self):
        text = """
step: install_docker
description: container runtime
actions:
  - type: wait_package_lock
  - type: run
    command: [apt-get, install, -y, docker.io]
    timeout: 600
  - type: trust_dependencies
postcondition:
  type: service_active
"""
        definition = parse_step_body("install_docker", text)

        actions = definition.body.actions
        assert [a.type for a in actions] == ["wait_package_lock", "run", "trust_dependencies"]
        assert isinstance(actions[1], RunAction)
        assert actions[1].timeout == 600
        assert isinstance(actions[2], TrustDependenciesAction)
        assert actions[2].check_command[-2:] == ["pm", "untrusted"]
        assert isinstance(definition.body.postcondition, ServiceActive)
        assert definition.fingerprint == fingerprint(text)

    def test_unknown_action_type(self):
        with pytest.raises(StepFetchError, match="invalid definition"):
            parse_step_body("x", "step: x\nactions:\n  - type: reboot\n")

    def test_unknown_field_rejected(self):
        text = "step: x\nactions:\n  - type: run\n    command: [true]\n    shell: yes\n"
        with pytest.raises(StepFetchError):
            parse_step_body("x", text)

    def test_empty_actions_rejected(self):
        with pytest.raises(StepFetchError):
            parse_step_body("x", "step: x\nactions: []\n")

    def test_step_name_mismatch(self):
        with pytest.raises(StepFetchError, match="declares step 'other'"):
            parse_step_body("x", "step: other\nactions:\n  - type: require_root\n")

    def test_malformed_yaml(self):
        with pytest.raises(StepFetchError, match="invalid YAML"):
            parse_step_body("x", "step: [unclosed\n")

    def test_not_a_mapping(self):
        with pytest.raises(StepFetchError, match="mapping"):
            parse_step_body("x", "- just\n- a list\n")


class TestFingerprint:
    def test_sha256_hex(self):
        assert fingerprint("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_changes_with_content(self):
        assert fingerprint("a") != fingerprint("b")


class TestRender:
    """Template substitution in commands."""

    def test_known_variables(self):
        assert render("{install_root}/bin/bun", {"install_root": "/root/.bun"}) == "/root/.bun/bin/bun"

    def test_unknown_left_verbatim(self):
        assert render("awk '{print $1}' {missing}", {}) == "awk '{print $1}' {missing}"

    def test_render_all(self):
        assert render_all(["git", "-C", "{repo_dir}"], {"repo_dir": "/opt/x"}) == ["git", "-C", "/opt/x"]
