"""
mirror.py
---------
Mirror engine: decide which tags of an image still need mirroring and copy them.

The diff is taken against the tags already recorded in status, never against a
listing of the destination. Recorded tags are therefore not re-copied, even if the
source re-pushed them with different content.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AbstractSet, FrozenSet, Iterable, Optional, Tuple

from slipway.deadline import Deadline
from slipway.errors import InvalidPatternError, SlipwayError
from slipway.registry import TagSource
from slipway.resources import MirrorPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MirrorResult:
    """Tags mirrored so far, plus the error that stopped the cycle (if any)."""

    mirrored_tags: FrozenSet[str]
    copied: Tuple[str, ...] = ()
    error: Optional[SlipwayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def compile_pattern(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidPatternError(f"tag_regex {pattern!r} does not compile: {exc}") from exc


def select_tags(pattern: "re.Pattern[str]", tags: Iterable[str]) -> FrozenSet[str]:
    """Tags the whole of which match *pattern* (anchored, case-sensitive)."""
    return frozenset(tag for tag in tags if pattern.fullmatch(tag))


def mirror_image(
    policy: MirrorPolicy,
    mirrored_tags: AbstractSet[str],
    source_token: str,
    dest_token: str,
    tag_source: TagSource,
    deadline: Optional[Deadline] = None,
    log: Optional[logging.Logger] = None,
) -> MirrorResult:
    """
    Copy every source tag matching ``policy.pattern`` that is not yet in *mirrored_tags*.

    Never raises for expected failures. The returned ``MirrorResult`` always holds a
    superset of *mirrored_tags*; on failure it carries the tags copied before the
    first error, and the error itself. Copying stops at the first failed tag.
    """
    log = log or logger
    previous = frozenset(mirrored_tags)

    if not policy.pattern:
        log.info("No tag_regex set for %s; nothing selected", policy.image_name)
        return MirrorResult(mirrored_tags=previous)

    try:
        pattern = compile_pattern(policy.pattern)
    except InvalidPatternError as exc:
        log.error("%s", exc)
        return MirrorResult(mirrored_tags=previous, error=exc)

    try:
        if deadline is not None:
            deadline.check("listing source tags")
        source_tags = tag_source.list_tags(policy.source_repository, policy.image_name, source_token, deadline)
    except SlipwayError as exc:
        log.error("Unable to list tags for %s%s: %s", policy.source_repository, policy.image_name, exc)
        return MirrorResult(mirrored_tags=previous, error=exc)

    matching = select_tags(pattern, source_tags)
    to_mirror = sorted(matching - previous)
    log.info(
        "%s: %d source tags, %d matching, %d to mirror",
        policy.image_name, len(source_tags), len(matching), len(to_mirror),
    )

    accumulated = set(previous)
    copied = []
    for tag in to_mirror:
        try:
            if deadline is not None:
                deadline.check(f"copying tag {tag}")
            tag_source.copy_tag(
                policy.source_repository,
                policy.dest_repository,
                policy.image_name,
                tag,
                source_token,
                dest_token,
                deadline,
            )
        except SlipwayError as exc:
            log.error("Failed to mirror %s:%s: %s", policy.image_name, tag, exc)
            return MirrorResult(mirrored_tags=frozenset(accumulated), copied=tuple(copied), error=exc)
        accumulated.add(tag)
        copied.append(tag)
        log.info("Mirrored %s:%s", policy.image_name, tag)

    return MirrorResult(mirrored_tags=frozenset(accumulated), copied=tuple(copied))
