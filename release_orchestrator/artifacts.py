"""Deterministic image tagging derived from source revisions."""

from __future__ import annotations

import re

from .models import ArtifactReference

TAG_LENGTH = 7

_REVISION_PATTERN = re.compile(r"^[0-9a-f]{7,64}$")
# Docker tag grammar.
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def derive_image_tag(revision: str, length: int = TAG_LENGTH) -> str:
    """Return the fixed-length commit-hash prefix used as the image tag."""
    normalized = revision.strip().lower()
    if not _REVISION_PATTERN.match(normalized):
        raise ValueError(f"Revision {revision!r} is not a commit hash")
    if len(normalized) < length:
        raise ValueError(f"Revision {revision!r} is shorter than {length} characters")
    return normalized[:length]


def validate_tag(tag: str) -> str:
    cleaned = tag.strip()
    if not _TAG_PATTERN.match(cleaned):
        raise ValueError(f"Invalid image tag {tag!r}")
    return cleaned


def artifact_for_revision(repository: str, revision: str) -> ArtifactReference:
    return ArtifactReference(repository=repository, tag=derive_image_tag(revision))


def parse_image(image: str) -> ArtifactReference:
    """Split ``repository:tag`` while leaving registry ports intact."""
    repository, separator, tag = image.rpartition(":")
    if not separator or "/" in tag:
        return ArtifactReference(repository=image, tag="latest")
    return ArtifactReference(repository=repository, tag=tag)
