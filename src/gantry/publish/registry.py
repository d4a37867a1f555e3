# publish/registry.py
from __future__ import annotations

import hashlib
import json
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..errors import ArtifactNotFound, ImmutableTagError, RegistryError

DEFAULT_FLOATING_TAGS = ("latest",)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "buildx": "Install the docker buildx plugin (docker buildx version).",
}


@dataclass(frozen=True)
class ManifestInfo:
    ref: str
    digest: str
    platforms: List[str]
    kind: str = "manifest"  # "image" | "manifest"


class Registry(Protocol):
    floating_tags: Sequence[str]

    def login(self, registry: str, username: str, password: str) -> None: ...

    def build_and_push(self, ref: str, platform: str, context: str = ".", build_args: Optional[Dict[str, str]] = None) -> str: ...

    def push_manifest(self, ref: str, sources: Sequence[str]) -> str: ...

    def inspect(self, ref: str) -> ManifestInfo: ...

    def exists(self, ref: str) -> bool: ...

    def tag(self, source_ref: str, target_ref: str) -> str: ...


# ---------------------------------------------------------------------
# Reference helpers
# ---------------------------------------------------------------------

def split_ref(ref: str) -> Tuple[str, str]:
    """
    Split `host[:port]/path:tag` or `host/path@sha256:...` into (repository, tag-or-digest).
    A reference with no tag gets `latest`.
    """
    if "@" in ref:
        repo, _, digest = ref.partition("@")
        return repo, digest
    head, sep, tail = ref.rpartition(":")
    if sep and "/" not in tail:
        return head, tail
    return ref, "latest"


def digest_ref(ref: str, digest: str) -> str:
    repo, _ = split_ref(ref)
    return f"{repo}@{digest}"


def _sha256_str(s: str) -> str:
    return "sha256:" + hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------
# In-memory registry (deterministic; used by tests and dry runs)
# ---------------------------------------------------------------------

@dataclass
class _Record:
    digest: str
    platforms: List[str]
    kind: str
    children: List[str] = field(default_factory=list)


class InMemoryRegistry:
    """
    A registry held in memory.

    Digests are content hashes of the build inputs, so the same inputs always
    produce the same digest and a retried push is a no-op. Every write is
    appended to `writes` as (operation, ref, digest).
    """

    def __init__(self, floating_tags: Iterable[str] = DEFAULT_FLOATING_TAGS):
        self.floating_tags = tuple(floating_tags)
        self._tags: Dict[str, _Record] = {}
        self._blobs: Dict[str, _Record] = {}
        self.writes: List[Tuple[str, str, str]] = []
        self.logins: List[Tuple[str, str]] = []
        self._lock = threading.RLock()

    # ---- reads ----

    def _lookup(self, ref: str) -> _Record:
        repo, tag = split_ref(ref)
        with self._lock:
            if tag.startswith("sha256:"):
                rec = self._blobs.get(tag)
            else:
                rec = self._tags.get(f"{repo}:{tag}")
        if rec is None:
            raise ArtifactNotFound(ref)
        return rec

    def exists(self, ref: str) -> bool:
        try:
            self._lookup(ref)
        except ArtifactNotFound:
            return False
        return True

    def inspect(self, ref: str) -> ManifestInfo:
        rec = self._lookup(ref)
        return ManifestInfo(ref=ref, digest=rec.digest, platforms=list(rec.platforms), kind=rec.kind)

    def tags(self) -> Dict[str, str]:
        with self._lock:
            return {ref: rec.digest for ref, rec in self._tags.items()}

    # ---- writes ----

    def _write(self, op: str, ref: str, rec: _Record) -> str:
        repo, tag = split_ref(ref)
        key = f"{repo}:{tag}"
        with self._lock:
            self._blobs[rec.digest] = rec
            existing = self._tags.get(key)
            if existing is not None and tag not in self.floating_tags:
                if existing.digest != rec.digest:
                    raise ImmutableTagError(ref=key, existing=existing.digest, attempted=rec.digest)
                self.writes.append(("noop", key, rec.digest))
                return rec.digest
            self._tags[key] = rec
            self.writes.append((op, key, rec.digest))
            return rec.digest

    def login(self, registry: str, username: str, password: str) -> None:
        if not password:
            raise RegistryError(f"login to {registry} refused: empty password")
        with self._lock:
            self.logins.append((registry, username))

    def build_and_push(self, ref: str, platform: str, context: str = ".", build_args: Optional[Dict[str, str]] = None) -> str:
        digest = _sha256_str(_json_dumps_stable({
            "context": context,
            "platform": platform,
            "build_args": dict(build_args or {}),
        }))
        return self._write("push", ref, _Record(digest=digest, platforms=[platform], kind="image"))

    def push_manifest(self, ref: str, sources: Sequence[str]) -> str:
        children = [self._lookup(s) for s in sources]
        for src, child in zip(sources, children):
            if child.kind != "image":
                raise RegistryError(f"manifest source {src} is not a platform image")
        digest = _sha256_str(_json_dumps_stable(sorted(c.digest for c in children)))
        platforms = [p for c in children for p in c.platforms]
        rec = _Record(digest=digest, platforms=platforms, kind="manifest", children=[c.digest for c in children])
        return self._write("manifest", ref, rec)

    def tag(self, source_ref: str, target_ref: str) -> str:
        rec = self._lookup(source_ref)
        return self._write("tag", target_ref, rec)


# ---------------------------------------------------------------------
# Docker CLI registry
# ---------------------------------------------------------------------

def _check_docker_available(docker: str = "docker") -> None:
    try:
        subprocess.run([docker, "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise RegistryError(f"Docker is not available. Hint: {TOOL_HINTS['docker']}")


class DockerCliRegistry:
    """
    Drives `docker buildx` and `docker manifest` against real registries.

    Immutable tags are checked before every write: an existing immutable tag is
    never rebuilt or overwritten, so retried runs are safe.
    """

    def __init__(self, floating_tags: Iterable[str] = DEFAULT_FLOATING_TAGS, docker: str = "docker"):
        self.floating_tags = tuple(floating_tags)
        self.docker = docker
        self._checked = False

    def _run(self, args: List[str], *, input: Optional[str] = None) -> str:
        if not self._checked:
            _check_docker_available(self.docker)
            self._checked = True
        proc = subprocess.run(
            [self.docker, *args],
            input=input,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise RegistryError(f"docker {args[0]} failed (exit={proc.returncode}): {proc.stderr.strip()[-2000:]}")
        return proc.stdout

    def _is_floating(self, ref: str) -> bool:
        return split_ref(ref)[1] in self.floating_tags

    def login(self, registry: str, username: str, password: str) -> None:
        self._run(["login", registry, "--username", username, "--password-stdin"], input=password)

    def exists(self, ref: str) -> bool:
        try:
            self.inspect(ref)
        except ArtifactNotFound:
            return False
        return True

    def inspect(self, ref: str) -> ManifestInfo:
        try:
            raw = self._run(["buildx", "imagetools", "inspect", ref, "--format", "{{json .Manifest}}"])
        except RegistryError as e:
            if "not found" in str(e).lower() or "manifest unknown" in str(e).lower():
                raise ArtifactNotFound(ref) from e
            raise
        # descriptor digest as the registry reports it
        doc = json.loads(raw)
        digest = doc["digest"]
        if doc.get("manifests"):
            platforms = [
                m["platform"]["architecture"]
                for m in doc["manifests"]
                if m.get("platform", {}).get("architecture", "unknown") != "unknown"
            ]
            return ManifestInfo(ref=ref, digest=digest, platforms=platforms, kind="manifest")
        config = json.loads(self._run(["buildx", "imagetools", "inspect", ref, "--format", "{{json .Image}}"]) or "{}")
        return ManifestInfo(ref=ref, digest=digest, platforms=[config.get("architecture", "unknown")], kind="image")

    def build_and_push(self, ref: str, platform: str, context: str = ".", build_args: Optional[Dict[str, str]] = None) -> str:
        if not self._is_floating(ref) and self.exists(ref):
            return self.inspect(ref).digest

        cmd = ["buildx", "build", "--platform", f"linux/{platform}", "--tag", ref, "--push", "--provenance=false"]
        for key, value in (build_args or {}).items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(context)
        self._run(cmd)
        return self.inspect(ref).digest

    def push_manifest(self, ref: str, sources: Sequence[str]) -> str:
        if not self._is_floating(ref) and self.exists(ref):
            existing = self.inspect(ref)
            wanted = sorted(self.inspect(s).platforms[0] for s in sources)
            if sorted(existing.platforms) != wanted:
                raise ImmutableTagError(ref=ref, existing=existing.digest, attempted=",".join(sources))
            return existing.digest

        self._run(["manifest", "create", "--amend", ref, *sources])
        self._run(["manifest", "push", "--purge", ref])
        return self.inspect(ref).digest

    def tag(self, source_ref: str, target_ref: str) -> str:
        source = self.inspect(source_ref)
        if not self._is_floating(target_ref) and self.exists(target_ref):
            existing = self.inspect(target_ref)
            if existing.digest != source.digest:
                raise ImmutableTagError(ref=target_ref, existing=existing.digest, attempted=source.digest)
            return existing.digest
        self._run(["buildx", "imagetools", "create", "--tag", target_ref, source_ref])
        return source.digest


REGISTRY_KINDS = ("memory", "docker")


def registry_from_name(kind: str, floating_tags: Sequence[str] = DEFAULT_FLOATING_TAGS) -> Registry:
    """`memory` for dry runs and tests, `docker` for a real registry through the docker CLI."""
    if kind == "memory":
        return InMemoryRegistry(floating_tags=floating_tags)
    if kind == "docker":
        return DockerCliRegistry(floating_tags=floating_tags)
    raise ValueError(f"Unknown registry kind '{kind}'. Expected one of {list(REGISTRY_KINDS)}")
