# actions/images.py
from __future__ import annotations

from typing import Dict, Optional

from .registry import ActionContext, ActionRegistry, Input

BUILTIN = ActionRegistry()


# ---------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------

@BUILTIN.action("gantry/noop@v1")
def noop(ctx: ActionContext) -> None:
    """Does nothing and succeeds."""
    ctx.log("ok")


# ---------------------------------------------------------------------
# Registry access
# ---------------------------------------------------------------------

@BUILTIN.action(
    "gantry/registry-login@v1",
    inputs={
        "registry": Input(str),
        "username": Input(str),
        "password_secret": Input(str),
    },
)
def registry_login(ctx: ActionContext) -> None:
    """Log in to a container registry with a brokered credential."""
    # resolved before anything touches the network
    secret = ctx.broker.resolve(ctx.inputs["password_secret"], scope="step")
    ctx.publisher.registry.login(ctx.inputs["registry"], ctx.inputs["username"], secret.value)
    ctx.log(f"logged in to {ctx.inputs['registry']} as {ctx.inputs['username']}")


# ---------------------------------------------------------------------
# Publish protocol
# ---------------------------------------------------------------------

@BUILTIN.action(
    "gantry/image-build@v1",
    inputs={
        "tag": Input(str),
        "platform": Input(str),
        "context": Input(str, required=False, default="."),
        "build_args": Input(dict, required=False, default={}),
    },
)
def image_build(ctx: ActionContext) -> Dict[str, str]:
    """Build one platform image and push it under its immutable tag."""
    image = ctx.publisher.push_platform(
        ctx.inputs["tag"],
        ctx.inputs["platform"],
        context=ctx.inputs["context"],
        build_args={k: str(v) for k, v in (ctx.inputs["build_args"] or {}).items()},
    )
    ctx.log(f"pushed {image.ref} ({image.digest})")
    return {"ref": image.ref, "digest": image.digest}


@BUILTIN.action(
    "gantry/image-manifest@v1",
    inputs={
        "tag": Input(str),
        "sources": Input(list),
        "platforms": Input(list),
    },
)
def image_manifest(ctx: ActionContext) -> Dict[str, str]:
    """Compose, push and verify the run-scoped manifest list."""
    image = ctx.publisher.compose_manifest(
        ctx.inputs["tag"],
        [str(s) for s in ctx.inputs["sources"]],
        [str(p) for p in ctx.inputs["platforms"]],
    )
    ctx.log(f"manifest {image.ref} verified for {sorted(image.platforms)} ({image.digest})")
    return {"ref": image.ref, "digest": image.digest}


@BUILTIN.action(
    "gantry/image-promote@v1",
    inputs={
        "tag": Input(str),
        "floating": Input(str),
        "platforms": Input(list),
    },
)
def image_promote(ctx: ActionContext) -> Dict[str, str]:
    """Point the floating tag at the verified manifest digest."""
    image = ctx.publisher.promote(
        ctx.inputs["tag"],
        ctx.inputs["floating"],
        [str(p) for p in ctx.inputs["platforms"]],
    )
    ctx.log(f"{image.ref} -> {image.digest}")
    return {"ref": image.ref, "digest": image.digest}


@BUILTIN.action(
    "gantry/image-mirror@v1",
    inputs={
        "source": Input(str),
        "target": Input(str),
        "platforms": Input(list),
        "floating": Input(str, required=False, default=None),
    },
)
def image_mirror(ctx: ActionContext) -> Dict[str, str]:
    """Copy a verified manifest to a secondary registry."""
    floating: Optional[str] = ctx.inputs["floating"] or None
    image = ctx.publisher.mirror(
        ctx.inputs["source"],
        ctx.inputs["target"],
        [str(p) for p in ctx.inputs["platforms"]],
        floating_ref=floating,
    )
    ctx.log(f"mirrored {ctx.inputs['source']} -> {image.ref} ({image.digest})")
    return {"ref": image.ref, "digest": image.digest}


def default_actions() -> ActionRegistry:
    return BUILTIN.copy()
