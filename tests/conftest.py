"""Shared fixtures for isc tests."""

import json
import pytest
from unittest.mock import Mock

import requests
from requests.structures import CaseInsensitiveDict

# ---------------------------------------------------------------------------
# Tag lists modelled on real registry inventories
# ---------------------------------------------------------------------------

LINUXSERVER_TAGS = [
    "latest", "develop", "amd64-latest", "arm64v8-latest",
    "4.0.0-r0-ls100", "4.0.3-r0-ls168", "amd64-4.1.0-r0-ls330",
    "4.1.0-r0-ls330", "arm64v8-4.1.0-r0-ls330", "4.1.0-r0-ls329",
    "version-4.1.0-r0",
]

TIMESTAMP_TAGS = [
    "latest", "dev", "0.18.2-20251203101500", "0.19.0-20260217164428",
    "0.19.0-20260217191538-amd64", "0.19.0-20260217191538", "sha-abc1234",
]

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def fake_response(status=200, headers=None, json_data=None, json_error=False):
    """Build a Mock standing in for requests.Response."""
    response = Mock()
    response.status_code = status
    response.headers = CaseInsensitiveDict(headers or {})
    if json_error:
        response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    else:
        response.json.return_value = json_data
    return response


def token_response(token="anon-token"):
    return fake_response(json_data={"token": token, "expires_in": 300})


def challenge_response():
    return fake_response(401, headers={
        "WWW-Authenticate": 'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'
    })


def tags_page(tags):
    return fake_response(json_data={"name": "x", "tags": tags})


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def minimal_config():
    """Minimal valid config with one container."""
    return {
        "containers": [{
            "image": "postgres:15-alpine",
        }]
    }


@pytest.fixture
def full_config():
    """Config exercising all optional fields."""
    return {
        "max_workers": 2,
        "skip_labels": ["com.dockerfleet.skip-update"],
        "version_labels": ["build_version"],
        "containers": [{
            "name": "sonarr",
            "image": "lscr.io/linuxserver/sonarr:latest",
            "local_digest": DIGEST_A,
            "labels": {"build_version": "Linuxserver.io version:- 4.0.3-r0-ls168 Build-date:- 2024-06-01"},
            "check_versions": True,
        }]
    }


@pytest.fixture
def write_config(tmp_path):
    """Write a config dict to disk and return its path."""
    def _write(config):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config))
        return str(config_file)
    return _write


@pytest.fixture
def timeout_error():
    return requests.Timeout("read timed out")
