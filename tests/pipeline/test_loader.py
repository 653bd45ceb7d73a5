"""Tests for YAML pipeline definitions."""

from __future__ import annotations

import textwrap

import pytest

from rollout.core.errors import ConfigError, DefinitionError
from rollout.orchestration.context import TriggerParameters
from rollout.orchestration.stage_types import RetryPolicy
from rollout.pipeline.actions import ScanAction, ShellAction
from rollout.pipeline.loader import ActionFactory, load_pipeline, pipeline_from_dict
from rollout.pipeline.registry import builtin_actions


def _write(tmp_path, text, name="web-release.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


def _params(**kwargs):
    kwargs.setdefault("target", "dev")
    kwargs.setdefault("ref", "main")
    return TriggerParameters(**kwargs)


WEB_RELEASE = """
    name: web-release
    description: Build, scan and deploy
    defaults:
      timeout_seconds: 900
      fail_fast: true
      variables: {APP: web}
    stages:
      - name: build
        run: make build
        env: {CI: "1"}
      - name: lint
        run: [make, lint]
        cwd: frontend
      - name: scan
        uses: scan
        needs: build
        with: {project_key: web, blocking: false}
      - name: deploy
        uses: deploy
        needs: [scan, lint]
        when:
          branch: [main, "release/*"]
          target: [dev, staging]
        timeout: 300
        retry: {max_attempts: 2, initial_delay_seconds: 10}
"""


class TestLoadPipeline:
    def test_full_definition(self, tmp_path):
        deploy = object()
        actions = {**builtin_actions(), "deploy": deploy}
        definition = load_pipeline(_write(tmp_path, WEB_RELEASE), actions)

        assert definition.name == "web-release"
        assert definition.description == "Build, scan and deploy"
        assert definition.fail_fast is True
        assert definition.default_timeout == 900.0
        assert definition.stage_names() == ["build", "lint", "scan", "deploy"]

        build = definition.get_stage("build")
        assert isinstance(build.action, ShellAction)
        assert build.action.command == "make build"
        assert build.action.env == {"CI": "1"}

        lint = definition.get_stage("lint")
        assert lint.action.command == ["make", "lint"]
        assert lint.action.cwd == "frontend"

        scan = definition.get_stage("scan")
        assert isinstance(scan.action, ScanAction)
        assert scan.action.blocking is False
        assert scan.depends_on == ("build",)

        stage = definition.get_stage("deploy")
        assert stage.action is deploy
        assert stage.depends_on == ("scan", "lint")
        assert stage.timeout_seconds == 300.0
        assert stage.retry == RetryPolicy(max_attempts=2, initial_delay_seconds=10)

    def test_when_condition(self, tmp_path):
        actions = {**builtin_actions(), "deploy": object()}
        stage = load_pipeline(_write(tmp_path, WEB_RELEASE), actions).get_stage("deploy")
        assert stage.should_run(_params())
        assert stage.should_run(_params(ref="release/2.1", target="staging"))
        assert not stage.should_run(_params(ref="feature/x"))
        assert not stage.should_run(_params(target="prod"))

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = _write(tmp_path, "stages:\n  - {name: a, run: 'true'}\n", name="nightly.yml")
        assert load_pipeline(path).name == "nightly"

    def test_name_override(self, tmp_path):
        path = _write(tmp_path, WEB_RELEASE)
        actions = {**builtin_actions(), "deploy": object()}
        assert load_pipeline(path, actions, name="other").name == "other"

    def test_mapping_form_of_stages(self):
        definition = pipeline_from_dict({
            "name": "p",
            "stages": {"build": {"run": "make"}, "test": {"run": "make test", "needs": ["build"]}},
        })
        assert definition.stage_names() == ["build", "test"]
        assert definition.get_stage("test").depends_on == ("build",)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_pipeline(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_pipeline(_write(tmp_path, "stages: [\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(DefinitionError):
            load_pipeline(_write(tmp_path, "- a\n- b\n"))

    @pytest.mark.parametrize(
        "defaults",
        ["{timeout_seconds: soon}", "{fail_fast: 'false'}", "[fail_fast]"],
    )
    def test_malformed_defaults(self, tmp_path, defaults):
        text = f"defaults: {defaults}\nstages:\n  - {{name: build, run: 'true'}}\n"
        with pytest.raises(DefinitionError):
            load_pipeline(_write(tmp_path, text))

    def test_fail_fast_false(self, tmp_path):
        text = "defaults: {fail_fast: false}\nstages:\n  - {name: build, run: 'true'}\n"
        assert load_pipeline(_write(tmp_path, text)).fail_fast is False


class TestMalformedStages:
    @pytest.mark.parametrize(
        "stages, match",
        [
            ([], "non-empty"),
            ([{"run": "make"}], "needs a name"),
            ([{"name": "a"}], "exactly one"),
            ([{"name": "a", "run": "x", "uses": "shell"}], "exactly one"),
            ([{"name": "a", "run": "x", "depends": ["b"]}], "unknown keys"),
            ([{"name": "a", "run": "x", "when": {"day": "monday"}}], "'when'"),
            ([{"name": "a", "run": "x", "timeout": 0}], "invalid"),
            ([{"name": "a", "run": "x", "retry": {"max_attempts": 0}}], "invalid"),
            ([{"name": "a", "run": "x", "retry": {"attempts": 2}}], "invalid"),
        ],
    )
    def test_rejected(self, stages, match):
        with pytest.raises(DefinitionError, match=match):
            pipeline_from_dict({"name": "p", "stages": stages})

    def test_graph_errors_surface(self):
        with pytest.raises(DefinitionError):
            pipeline_from_dict({
                "name": "p",
                "stages": [{"name": "a", "run": "x", "needs": ["b"]}, {"name": "b", "run": "x", "needs": ["a"]}],
            })

    def test_unknown_dependency(self):
        with pytest.raises(DefinitionError):
            pipeline_from_dict({"name": "p", "stages": [{"name": "a", "run": "x", "needs": ["ghost"]}]})

    def test_missing_name(self):
        with pytest.raises(DefinitionError, match="name is required"):
            pipeline_from_dict({"stages": [{"name": "a", "run": "x"}]})


class TestActionReferences:
    def test_unknown_action(self):
        with pytest.raises(DefinitionError, match="unknown action 'sonar'") as exc_info:
            pipeline_from_dict({"name": "p", "stages": [{"name": "a", "uses": "sonar"}]}, builtin_actions())
        assert exc_info.value.context.stage == "a"

    def test_with_must_be_mapping(self):
        with pytest.raises(DefinitionError, match="must be a mapping"):
            pipeline_from_dict(
                {"name": "p", "stages": [{"name": "a", "uses": "scan", "with": ["web"]}]}, builtin_actions()
            )

    def test_plain_entry_takes_no_parameters(self):
        actions = {"noop": lambda ctx: None}
        definition = pipeline_from_dict({"name": "p", "stages": [{"name": "a", "uses": "noop"}]}, actions)
        assert definition.get_stage("a").action is actions["noop"]
        with pytest.raises(DefinitionError, match="takes no 'with'"):
            pipeline_from_dict({"name": "p", "stages": [{"name": "a", "uses": "noop", "with": {"x": 1}}]}, actions)

    def test_factory_rejects_bad_parameters(self):
        with pytest.raises(DefinitionError, match="cannot build action 'scan'"):
            pipeline_from_dict(
                {"name": "p", "stages": [{"name": "a", "uses": "scan", "with": {"project": "web"}}]},
                builtin_actions(),
            )

    def test_each_stage_gets_its_own_instance(self):
        calls = []
        factory = ActionFactory(lambda **params: calls.append(params) or object())
        definition = pipeline_from_dict(
            {
                "name": "p",
                "stages": [
                    {"name": "a", "uses": "custom", "with": {"n": 1}},
                    {"name": "b", "uses": "custom"},
                ],
            },
            {"custom": factory},
        )
        assert calls == [{"n": 1}, {}]
        assert definition.get_stage("a").action is not definition.get_stage("b").action
