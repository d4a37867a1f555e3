from __future__ import annotations

import pytest

from gantry.env import Environment, merge_layers
from gantry.errors import DefinitionError, TemplateError
from gantry.model import SecretRef
from gantry.templates import placeholders, render, render_namespace, render_value


class TestEnvironment:
    def test_precedence_step_over_job_over_workflow_over_process(self):
        env = (
            Environment(process={"X": "process", "PATH": "/bin"})
            .with_layer("workflow", {"X": "workflow", "W": "w"})
            .with_layer("job", {"X": "job", "J": "j"})
        )
        assert env.resolve()["X"] == "job"
        stepped = env.with_layer("step", {"X": "step"})
        assert stepped.resolve()["X"] == "step"
        assert dict(stepped.resolve()) == {"X": "step", "PATH": "/bin", "W": "w", "J": "j"}
        # layering returns a new value
        assert env.resolve()["X"] == "job"

    def test_declared_excludes_process(self):
        env = Environment(process={"HOME": "/root"}).with_layer("job", {"A": "1"})
        assert dict(env.declared()) == {"A": "1"}

    def test_resolved_mapping_is_read_only(self):
        env = Environment().with_layer("job", {"A": "1"})
        with pytest.raises(TypeError):
            env.resolve()["A"] = "2"  # type: ignore[index]

    def test_unknown_layer(self):
        with pytest.raises(ValueError, match="unknown env layer"):
            Environment().with_layer("global", {})

    def test_secret_refs_pass_through(self):
        merged = merge_layers({"TOKEN": "plain"}, {"TOKEN": SecretRef("FLY_API_TOKEN")})
        assert merged == {"TOKEN": SecretRef("FLY_API_TOKEN")}


class TestTemplates:
    SCOPE = {"repository": "acme/api", "sha": "abc123", "env.IMAGE": "ghcr.io/acme/api"}

    def test_render(self):
        assert render("${{ env.IMAGE }}:${{ github.sha }}", self.SCOPE) == "ghcr.io/acme/api:abc123"
        assert render("no placeholders", self.SCOPE) == "no placeholders"

    def test_unknown_reference(self):
        with pytest.raises(TemplateError, match="secrets.TOKEN"):
            render("${{ secrets.TOKEN }}", self.SCOPE)

    def test_placeholders(self):
        assert placeholders("${{ a }} and ${{b.c}}") == ["a", "b.c"]

    def test_render_namespace_leaves_other_names(self):
        out = render_namespace(
            "${{ matrix.p }}-${{ sha }}",
            "matrix",
            {"p": "arm64"},
            lambda key: DefinitionError(key),
        )
        assert out == "arm64-${{ sha }}"

    def test_render_namespace_missing(self):
        with pytest.raises(DefinitionError, match="os"):
            render_namespace("${{ matrix.os }}", "matrix", {}, lambda key: DefinitionError(key))

    def test_render_value_nested(self):
        value = {"sources": ["${{ sha }}-a", "${{ sha }}-b"], "n": 3, "args": {"BIN": "${{ repository }}"}}
        assert render_value(value, lambda s: render(s, self.SCOPE)) == {
            "sources": ["abc123-a", "abc123-b"],
            "n": 3,
            "args": {"BIN": "acme/api"},
        }
