#!/usr/bin/env python3
"""Tests for artifact stores."""

import pytest
import requests

from conftest import FakeSession, make_response
from gantry.artifacts import FileSystemArtifactStore, InMemoryArtifactStore, NexusArtifactStore
from gantry.artifacts.base import validate_coordinate
from gantry.errors import ConflictError, NotFoundError
from gantry.utils.retry import RetryConfig, ServiceUnavailableError

NEXUS = "http://nexus.local/repository"
JAR_URL = f"{NEXUS}/libs/1.0/app.jar"


@pytest.fixture(params=["memory", "filesystem"])
def local_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryArtifactStore()
    return FileSystemArtifactStore(str(tmp_path / "artifacts"))


# ============================================================================
# Local Store Tests
# ============================================================================

def test_version_is_immutable(local_store):
    local_store.upload("libs", "1.0", "app.jar", b"first")

    with pytest.raises(ConflictError):
        local_store.upload("libs", "1.0", "app.jar", b"second")

    assert local_store.download("libs", "1.0", "app.jar") == b"first"


def test_overwrite_replaces_content(local_store):
    local_store.upload("libs", "1.0", "app.jar", b"first")

    local_store.upload("libs", "1.0", "app.jar", b"second", overwrite=True)

    assert local_store.download("libs", "1.0", "app.jar") == b"second"


def test_missing_artifact(local_store):
    assert local_store.exists("libs", "9.9", "app.jar") is False
    with pytest.raises(NotFoundError):
        local_store.download("libs", "9.9", "app.jar")


def test_list_versions(local_store):
    for version in ("1.1", "1.0"):
        local_store.upload("libs", version, "app.jar", b"x")

    assert local_store.list_versions("libs") == ["1.0", "1.1"]
    assert local_store.list_versions("other") == []


def test_filesystem_layout(tmp_path):
    store = FileSystemArtifactStore(str(tmp_path))

    location = store.upload("charts", "2.0", "cart-2.0.tgz", b"chart")

    assert (tmp_path / "charts" / "2.0" / "cart-2.0.tgz").read_bytes() == b"chart"
    assert location.startswith("file://")
    assert not list((tmp_path / "charts" / "2.0").glob(".upload-*"))


def test_coordinates_cannot_escape():
    assert validate_coordinate("libs", "1.0", "app.jar") == "libs/1.0/app.jar"
    for bad in (("..", "1.0", "a"), ("libs", "", "a"), ("libs", "1.0", "a/b"), ("libs", "1..0", "a")):
        with pytest.raises(ValueError):
            validate_coordinate(*bad)


# ============================================================================
# Nexus Store Tests
# ============================================================================

def nexus(routes):
    session = FakeSession(routes)
    store = NexusArtifactStore(
        NEXUS,
        session=session,
        retry_config=RetryConfig(max_retries=1, base_delay=0.01, jitter=False),
    )
    return store, session


def test_nexus_upload_checks_existence_first():
    store, session = nexus({
        ("HEAD", JAR_URL): make_response(404),
        ("PUT", JAR_URL): make_response(201),
    })

    location = store.upload("libs", "1.0", "app.jar", b"jar")

    assert location == JAR_URL
    assert [r["method"] for r in session.requests] == ["HEAD", "PUT"]
    assert session.requests[1]["data"] == b"jar"


def test_nexus_existing_version_conflicts():
    store, session = nexus({("HEAD", JAR_URL): make_response(200)})

    with pytest.raises(ConflictError):
        store.upload("libs", "1.0", "app.jar", b"jar")
    assert [r["method"] for r in session.requests] == ["HEAD"]


def test_nexus_redeploy_rejection_is_a_conflict():
    store, _ = nexus({("PUT", JAR_URL): make_response(400)})

    with pytest.raises(ConflictError):
        store.upload("libs", "1.0", "app.jar", b"jar", overwrite=True)


def test_nexus_bad_request_outside_upload_is_an_http_error():
    store, _ = nexus({("GET", JAR_URL): make_response(400), ("HEAD", JAR_URL): make_response(400)})

    with pytest.raises(requests.HTTPError):
        store.download("libs", "1.0", "app.jar")
    with pytest.raises(requests.HTTPError):
        store.exists("libs", "1.0", "app.jar")


def test_nexus_download():
    store, _ = nexus({("GET", JAR_URL): make_response(200, content=b"jar bytes")})

    assert store.download("libs", "1.0", "app.jar") == b"jar bytes"
    with pytest.raises(NotFoundError):
        store.download("libs", "2.0", "app.jar")


def test_nexus_retries_unavailable_responses():
    store, session = nexus({("GET", JAR_URL): [make_response(503), make_response(200, content=b"ok")]})

    assert store.download("libs", "1.0", "app.jar") == b"ok"
    assert len(session.requests) == 2


def test_nexus_circuit_opens_after_repeated_failures():
    store, session = nexus({("GET", JAR_URL): make_response(503)})
    store.retry_config = RetryConfig(max_retries=0)

    for _ in range(store.circuit_breaker_threshold):
        with pytest.raises(ServiceUnavailableError):
            store.download("libs", "1.0", "app.jar")

    with pytest.raises(ServiceUnavailableError, match="Circuit breaker is open"):
        store.download("libs", "1.0", "app.jar")
    assert len(session.requests) == store.circuit_breaker_threshold
