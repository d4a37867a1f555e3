from __future__ import annotations

import pytest

from gantry import build, job, need, secret, sh, uses, wf
from gantry.dsl import aggregate, matrix
from gantry.model import JoinPolicy, Need, SecretRef, TriggerEvent


class TestJobHelpers:
    def test_job_with_steps_and_defaults(self):
        j = job("test", sh("a", "echo a"), sh("b", "echo b", cwd="sub"), cwd="repo", needs=["lint"])
        assert [s.cwd for s in j.steps] == ["repo", "sub"]
        assert j.needs == [Need("lint")]
        assert j.runs_on == "ubuntu-latest"

    def test_steps_list_comes_first(self):
        j = job("x", sh("second", "true"), steps_list=[sh("first", "true")])
        assert [s.name for s in j.steps] == ["first", "second"]

    def test_job_requires_a_step(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_uses_collects_inputs(self):
        step = uses("push", "gantry/image-build@v1", id="push", tag="t", platform="amd64")
        assert step.kind == "action"
        assert step.with_ == {"tag": "t", "platform": "amd64"}
        assert step.id == "push"

    def test_need_policy_from_string(self):
        edge = need("test", "any_succeeded", skipped_satisfies=False)
        assert edge == Need("test", JoinPolicy.ANY_SUCCEEDED, False)
        with pytest.raises(ValueError):
            need("test", "most_succeeded")

    def test_matrix_and_derive(self):
        j = job(
            "build",
            sh("b", "true"),
            matrix=matrix(platform=["amd64", "arm64"], shard=[1, 2]),
            derive={"arch": ("platform", {"amd64": "x86_64", "arm64": "aarch64"})},
        )
        assert j.matrix.size == 4
        assert j.matrix.axes[1].values == ["1", "2"]
        assert j.matrix.derived[0].table["arm64"] == "aarch64"

    def test_derive_without_matrix(self):
        with pytest.raises(ValueError, match="needs a matrix"):
            job("build", sh("b", "true"), derive={"arch": ("platform", {})})

    def test_aggregate(self):
        agg = aggregate("accept", ["lint", need("test", "any_succeeded")])
        assert agg.aggregate
        assert agg.steps == []
        assert [n.job for n in agg.needs] == ["lint", "test"]


class TestBuilder:
    def test_builder(self):
        j = (
            build("deploy")
            .depends_on("image", need("push", skipped_satisfies=False))
            .define_step("ship", "./ship.sh", cwd="deploy", timeout_seconds=60)
            .use_action("promote", "gantry/noop@v1")
            .with_env(TOKEN=secret("FLY_API_TOKEN"), RETRIES=3)
            .with_matrix(region=["ams", "iad"])
            .derive("zone", "region", {"ams": "eu", "iad": "us"})
            .when("ref == 'refs/heads/main'")
            .runs_on("self-hosted")
            .timeout(600)
            .build()
        )
        assert [n.job for n in j.needs] == ["image", "push"]
        assert j.env == {"TOKEN": SecretRef("FLY_API_TOKEN"), "RETRIES": "3"}
        assert j.steps[0].timeout_seconds == 60
        assert j.steps[1].uses == "gantry/noop@v1"
        assert j.matrix.derived[0].name == "zone"
        assert (j.if_, j.runs_on, j.timeout_seconds) == ("ref == 'refs/heads/main'", "self-hosted", 600)

    def test_builder_requires_steps(self):
        with pytest.raises(ValueError, match="has no steps"):
            build("nothing").depends_on("x").build()


class TestWorkflow:
    def test_defaults_to_every_event(self):
        workflow = wf("ci", job("a", sh("a", "true")))
        assert workflow.on == list(TriggerEvent)
        assert workflow.aggregator is None

    def test_events_and_env(self):
        workflow = wf("ci", job("a", sh("a", "true")), on=["push"], env={"X": "1"})
        assert workflow.on == [TriggerEvent.PUSH]
        assert workflow.env == {"X": "1"}


class TestPackageExports:
    def test_matrix_helper_is_not_shadowed_by_the_submodule(self):
        import gantry
        import gantry.cli  # noqa: F401  pulls in every submodule

        assert callable(gantry.matrix)
        assert gantry.matrix is matrix
        assert job("t", sh("t", "true"), matrix=gantry.matrix(n=[1, 2])).matrix is not None

    def test_all_exports_resolve(self):
        import gantry

        for name in gantry.__all__:
            assert getattr(gantry, name) is not None
