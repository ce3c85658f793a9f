# SPDX-License-Identifier: LGPL-2.1-or-later

from typing import Optional

from mkcos.config import TrustConfig


def strip_tag(image: str) -> Optional[str]:
    """Returns the image name without its tag (and any digest), or None if it has no tag."""
    name = image.split("@", 1)[0]
    colon = name.rfind(":")
    # A colon before the last slash belongs to a registry port, not a tag.
    if colon <= name.rfind("/"):
        return None
    return name[:colon]


def strip_digest(image: str) -> Optional[str]:
    # Only sha256 digests are recognised.
    name, sep, _ = image.partition("@sha256:")
    return name if sep else None


def image_org(image: str) -> Optional[str]:
    if not image:
        return None

    parts = image.split("/")
    if len(parts) == 1:
        # Single names like nginx live in the library organization on Docker Hub.
        return "library"
    if len(parts) == 2:
        return parts[0]
    # registry/org/repo
    return parts[1]


def enforce_content_trust(image: str, trust: TrustConfig) -> bool:
    """Whether the trust policy requires image to be verified.

    An image matches if its full reference, the reference without its tag
    or the reference without its sha256 digest is listed explicitly, or if
    the organization it belongs to is listed.
    """
    if image in trust.image:
        return True

    for name in (strip_tag(image), strip_digest(image)):
        if name is not None and name in trust.image:
            return True

    org = image_org(image)
    return org is not None and org in trust.org
