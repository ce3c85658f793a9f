# SPDX-License-Identifier: LGPL-2.1-or-later

from mkcos.config import TrustConfig
from mkcos.trust import enforce_content_trust, image_org, strip_digest, strip_tag


def images(*names: str) -> TrustConfig:
    return TrustConfig(image=frozenset(names))


def orgs(*names: str) -> TrustConfig:
    return TrustConfig(org=frozenset(names))


def test_trust_tag_stripped() -> None:
    assert enforce_content_trust("library/nginx:1.19", images("library/nginx"))
    assert not enforce_content_trust("library/nginx:1.19", images("library/nginx:1.20"))


def test_trust_exact() -> None:
    assert enforce_content_trust("library/nginx:1.19", images("library/nginx:1.19"))
    assert not enforce_content_trust("library/nginx", images("library/nginx:1.19"))


def test_trust_digest() -> None:
    trust = images("alpine@sha256:abcd")
    assert enforce_content_trust("alpine@sha256:abcd", trust)
    assert not enforce_content_trust("alpine@sha256:ffff", trust)

    assert enforce_content_trust("alpine@sha256:ffff", images("alpine"))
    # Only sha256 digests are stripped.
    assert not enforce_content_trust("alpine@sha512:ffff", images("alpine"))


def test_trust_org() -> None:
    assert enforce_content_trust("nginx", orgs("library"))
    assert enforce_content_trust("nginx:latest", orgs("library"))
    assert enforce_content_trust("linuxkit/kernel:4.19.x", orgs("linuxkit"))
    assert enforce_content_trust("docker.io/linuxkit/kernel:4.19.x", orgs("linuxkit"))
    assert not enforce_content_trust("linuxkit/kernel:4.19.x", orgs("library"))


def test_trust_empty_policy() -> None:
    assert not enforce_content_trust("linuxkit/kernel:4.19.x", TrustConfig())
    assert not enforce_content_trust("", orgs("library"))
    assert not TrustConfig()
    assert orgs("linuxkit")


def test_strip_tag() -> None:
    assert strip_tag("nginx:1.19") == "nginx"
    assert strip_tag("nginx") is None
    assert strip_tag("localhost:5000/nginx") is None
    assert strip_tag("localhost:5000/nginx:1.19") == "localhost:5000/nginx"
    assert strip_tag("nginx:1.19@sha256:abcd") == "nginx"


def test_strip_digest() -> None:
    assert strip_digest("alpine@sha256:abcd") == "alpine"
    assert strip_digest("alpine:3.18@sha256:abcd") == "alpine:3.18"
    assert strip_digest("alpine") is None


def test_image_org() -> None:
    assert image_org("") is None
    assert image_org("nginx") == "library"
    assert image_org("linuxkit/kernel") == "linuxkit"
    assert image_org("registry.example.com/linuxkit/kernel") == "linuxkit"
