# publish/publisher.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..errors import ArtifactNotFound, PublishVerificationFailed, RunCancelled
from .registry import ManifestInfo, Registry, digest_ref, split_ref


@dataclass(frozen=True)
class PublishedImage:
    ref: str
    digest: str
    platforms: List[str] = field(default_factory=list)


class ImagePublisher:
    """
    Multi-platform publish protocol.

      1. push_platform:     one immutable tag per platform
      2. compose_manifest:  one immutable manifest list over those tags
      3. verify_manifest:   inspect the pushed manifest against the intended platform set
      4. promote:           re-tag the verified digest as the floating tag

    Only step 4 rewrites a tag, and it always re-verifies first. A failed
    verification leaves the immutable tags in place and stops there.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        is_cancelled: Optional[Callable[[], bool]] = None,
        notify: Optional[Callable[[str, str], None]] = None,
    ):
        self.registry = registry
        self._is_cancelled = is_cancelled or (lambda: False)
        self._notify = notify or (lambda event, ref: None)

    def with_hooks(
        self,
        *,
        is_cancelled: Optional[Callable[[], bool]] = None,
        notify: Optional[Callable[[str, str], None]] = None,
    ) -> "ImagePublisher":
        return ImagePublisher(
            self.registry,
            is_cancelled=is_cancelled or self._is_cancelled,
            notify=notify or self._notify,
        )

    def _check_cancelled(self) -> None:
        if self._is_cancelled():
            raise RunCancelled("run cancelled before publish write")

    # ---- 1 ----

    def push_platform(
        self,
        ref: str,
        platform: str,
        *,
        context: str = ".",
        build_args: Optional[Dict[str, str]] = None,
    ) -> PublishedImage:
        self._check_cancelled()
        digest = self.registry.build_and_push(ref, platform, context=context, build_args=build_args)
        self._notify("pushed", ref)
        return PublishedImage(ref=ref, digest=digest, platforms=[platform])

    # ---- 2 + 3 ----

    def compose_manifest(self, ref: str, sources: Sequence[str], platforms: Sequence[str]) -> PublishedImage:
        self._check_cancelled()
        self.registry.push_manifest(ref, list(sources))
        self._notify("manifest", ref)
        info = self.verify_manifest(ref, platforms)
        return PublishedImage(ref=ref, digest=info.digest, platforms=list(info.platforms))

    def verify_manifest(self, ref: str, platforms: Sequence[str]) -> ManifestInfo:
        try:
            info = self.registry.inspect(ref)
        except ArtifactNotFound:
            raise PublishVerificationFailed(ref=ref, expected=list(platforms), actual=[])
        if info.kind != "manifest" or sorted(info.platforms) != sorted(platforms):
            raise PublishVerificationFailed(
                ref=ref,
                expected=list(platforms),
                actual=list(info.platforms),
                details={"kind": info.kind, "digest": info.digest},
            )
        self._notify("verified", ref)
        return info

    # ---- 4 ----

    def promote(self, manifest_ref: str, floating_ref: str, platforms: Sequence[str]) -> PublishedImage:
        _, tag = split_ref(floating_ref)
        if tag not in self.registry.floating_tags:
            raise ValueError(
                f"{floating_ref} is not a floating tag (allowed: {list(self.registry.floating_tags)})"
            )
        info = self.verify_manifest(manifest_ref, platforms)
        self._check_cancelled()
        digest = self.registry.tag(digest_ref(manifest_ref, info.digest), floating_ref)
        self._notify("promoted", floating_ref)
        return PublishedImage(ref=floating_ref, digest=digest, platforms=list(info.platforms))

    # ---- secondary registry ----

    def mirror(
        self,
        source_ref: str,
        target_ref: str,
        platforms: Sequence[str],
        floating_ref: Optional[str] = None,
    ) -> PublishedImage:
        """Copy a verified manifest to another registry; the mirror's floating tag goes last."""
        info = self.verify_manifest(source_ref, platforms)
        self._check_cancelled()
        digest = self.registry.tag(digest_ref(source_ref, info.digest), target_ref)
        self._notify("mirrored", target_ref)
        if floating_ref:
            self.promote(target_ref, floating_ref, platforms)
        return PublishedImage(ref=target_ref, digest=digest, platforms=list(info.platforms))
