from __future__ import annotations

import pytest

from gantry.dsl import job, matrix, sh, uses
from gantry.errors import DefinitionError
from gantry.matrix import expand, instance_id, substitute_matrix
from gantry.model import DerivedValue, Job, Matrix, MatrixAxis, Step


def _job(m: Matrix, *steps: Step) -> Job:
    return Job(name="build", steps=list(steps) or [Step(name="s", run="true")], matrix=m)


class TestExpand:
    def test_unparameterized_job_is_one_instance(self):
        assert expand(job("lint", sh("s", "true"))) == [("lint", {})]

    def test_cartesian_product_in_declaration_order(self):
        j = job("test", sh("s", "true"), matrix=matrix(os=["linux", "mac"], py=["3.10", "3.11", "3.12"]))
        instances = expand(j)
        assert len(instances) == 2 * 3
        assert [iid for iid, _ in instances] == [
            "test[linux, 3.10]",
            "test[linux, 3.11]",
            "test[linux, 3.12]",
            "test[mac, 3.10]",
            "test[mac, 3.11]",
            "test[mac, 3.12]",
        ]
        assert len({iid for iid, _ in instances}) == 6

    def test_values_are_strings(self):
        j = job("test", sh("s", "true"), matrix=matrix(py=[3.11, 3.12]))
        assert [v for _, v in expand(j)] == [{"py": "3.11"}, {"py": "3.12"}]

    def test_derived_values(self):
        j = job(
            "build",
            sh("s", "true"),
            matrix=matrix(platform=["amd64", "arm64"]),
            derive={"arch": ("platform", {"amd64": "x86_64", "arm64": "aarch64"})},
        )
        assert expand(j) == [
            ("build[amd64]", {"platform": "amd64", "arch": "x86_64"}),
            ("build[arm64]", {"platform": "arm64", "arch": "aarch64"}),
        ]

    def test_instance_id_without_axes(self):
        assert instance_id("lint", {}, []) == "lint"


class TestValidation:
    @pytest.mark.parametrize(
        "m, message",
        [
            (Matrix(axes=[]), "no axes"),
            (Matrix(axes=[MatrixAxis("p", ["a"]), MatrixAxis("p", ["b"])]), "twice"),
            (Matrix(axes=[MatrixAxis("p", [])]), "has no values"),
            (Matrix(axes=[MatrixAxis("p", ["a", "a"])]), "duplicate values"),
            (Matrix(axes=[MatrixAxis("p", ["a"])], derived=[DerivedValue("p", "p", {"a": "x"})]), "clashes"),
            (Matrix(axes=[MatrixAxis("p", ["a"])], derived=[DerivedValue("arch", "q", {"a": "x"})]), "unknown axis"),
            (Matrix(axes=[MatrixAxis("p", ["a", "b"])], derived=[DerivedValue("arch", "p", {"a": "x"})]), "no entry"),
        ],
    )
    def test_invalid_matrix(self, m, message):
        with pytest.raises(DefinitionError, match=message):
            expand(_job(m))


class TestSubstitute:
    def test_renders_matrix_placeholders_only(self):
        j = job(
            "build",
            sh("Build ${{ matrix.platform }}", "echo ${{ matrix.arch }} ${{ sha }}", cwd="out/${{ matrix.platform }}"),
            uses("Push", "gantry/image-build@v1", tag="img:${{ sha }}-${{ matrix.platform }}", platform="${{ matrix.platform }}"),
            matrix=matrix(platform=["arm64"]),
            derive={"arch": ("platform", {"arm64": "aarch64"})},
            env={"TARGET": "${{ matrix.arch }}-unknown-linux"},
        )
        (_, values), = expand(j)
        out = substitute_matrix(j, values)

        build, push = out.steps
        assert build.name == "Build arm64"
        assert build.run == "echo aarch64 ${{ sha }}"
        assert build.cwd == "out/arm64"
        assert push.with_ == {"tag": "img:${{ sha }}-arm64", "platform": "arm64"}
        assert out.env == {"TARGET": "aarch64-unknown-linux"}
        # the definition itself is left untouched
        assert j.steps[0].run == "echo ${{ matrix.arch }} ${{ sha }}"

    def test_gate_text_is_not_substituted(self):
        j = job("build", sh("s", "true", if_="matrix.platform == 'arm64'"), matrix=matrix(platform=["arm64"]))
        (_, values), = expand(j)
        assert substitute_matrix(j, values).steps[0].if_ == "matrix.platform == 'arm64'"
