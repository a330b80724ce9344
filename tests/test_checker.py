"""Tests for per-container status and the bounded multi-container check."""

import json
import threading
import time
import pytest
from unittest.mock import Mock, patch

import isc
from isc import ImageStalenessChecker
from registry_api import RegistryClient, TagsResult, UpdateVerdict
from tests.conftest import DIGEST_A, DIGEST_B, LINUXSERVER_TAGS, TIMESTAMP_TAGS


@pytest.fixture
def client():
    mock = Mock(spec=RegistryClient)
    mock.check_update_available.return_value = UpdateVerdict(update_available=False, remote_digest=DIGEST_A)
    mock.list_tags.return_value = TagsResult(tags=LINUXSERVER_TAGS)
    return mock


@pytest.fixture
def make_checker(write_config, client):
    def _make(containers, **extra):
        config = {"containers": containers, **extra}
        return ImageStalenessChecker(write_config(config), client=client)
    return _make


class TestCheckContainer:

    def test_skip_label_pins_without_network(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({
            "name": "dev-db", "image": "postgres:15", "local_digest": DIGEST_A,
            "labels": {"com.dockerfleet.dev": "true"},
        })

        assert status.pinned is True
        assert status.update_available is False
        assert "com.dockerfleet.dev" in status.reason
        client.check_update_available.assert_not_called()
        client.list_tags.assert_not_called()

    def test_digest_pinned_reference(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({"image": "nginx@sha256:" + "e" * 64, "local_digest": DIGEST_A})

        assert status.update_available is False
        assert status.reason
        client.check_update_available.assert_not_called()

    def test_digest_update(self, make_checker, client):
        client.check_update_available.return_value = UpdateVerdict(update_available=True, remote_digest=DIGEST_B)
        checker = make_checker([])
        status = checker.check_container({"name": "db", "image": "postgres:15-alpine", "local_digest": DIGEST_A})

        assert status.update_available is True
        assert status.remote_digest == DIGEST_B
        assert status.current_tag == "15-alpine"
        assert status.current_digest_short == "a" * 12
        client.check_update_available.assert_called_once_with(DIGEST_A, "postgres:15-alpine")
        # "15-alpine" carries no version, so no tag listing is attempted
        client.list_tags.assert_not_called()

    def test_missing_local_digest(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({"image": "postgres:15"})

        assert status.update_available is False
        assert status.error
        client.check_update_available.assert_not_called()

    def test_version_from_tag_behind_newest(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({
            "name": "qbit", "image": "lscr.io/linuxserver/qbittorrent:4.0.3-r0-ls168",
            "local_digest": DIGEST_A,
        })

        client.list_tags.assert_called_once_with("lscr.io", "linuxserver/qbittorrent")
        assert status.newest_tag == "4.1.0-r0-ls330"
        assert status.update_available_by_version is True
        assert status.update_available is True

    def test_version_from_label(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({
            "image": "lscr.io/linuxserver/qbittorrent:latest",
            "local_digest": DIGEST_A,
            "labels": {"build_version": "Linuxserver.io version:- 4.1.0-r0-ls330 Build-date:- 2024-06-01"},
        })

        assert status.resolved_version == "4.1.0-r0-ls330"
        assert status.newest_tag == "4.1.0-r0-ls330"
        assert status.update_available_by_version is False
        assert status.update_available is False

    def test_resolved_newer_than_tag_list(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({
            "image": "lscr.io/linuxserver/qbittorrent:latest",
            "local_digest": DIGEST_A,
            "labels": {"org.opencontainers.image.version": "4.2.0-r0-ls1"},
        })

        assert status.resolved_newer_than_tag_list is True
        assert status.update_available is False

    def test_cross_dialect_versions_are_not_compared(self, make_checker, client):
        client.list_tags.return_value = TagsResult(tags=TIMESTAMP_TAGS)
        checker = make_checker([])
        status = checker.check_container({
            "image": "ghcr.io/org/app:0.1.0-r0-ls1", "local_digest": DIGEST_A,
        })

        assert status.newest_tag == "0.19.0-20260217191538"
        assert status.update_available_by_version is False
        assert status.update_available is False

    @pytest.mark.parametrize("label, tags", [
        ("4.1.0", LINUXSERVER_TAGS),
        ("0.19.0", TIMESTAMP_TAGS),
    ])
    def test_plain_label_matching_newest_release_is_current(self, make_checker, client, label, tags):
        client.list_tags.return_value = TagsResult(tags=tags)
        checker = make_checker([])
        status = checker.check_container({
            "image": "ghcr.io/org/app:latest", "local_digest": DIGEST_A,
            "labels": {"org.opencontainers.image.version": label},
        })

        assert status.resolved_version == label
        assert status.update_available_by_version is False
        assert status.resolved_newer_than_tag_list is False
        assert status.update_available is False

    def test_plain_label_behind_newest_release(self, make_checker, client):
        checker = make_checker([])
        status = checker.check_container({
            "image": "ghcr.io/org/app:latest", "local_digest": DIGEST_A,
            "labels": {"org.opencontainers.image.version": "4.0.0"},
        })

        assert status.newest_tag == "4.1.0-r0-ls330"
        assert status.update_available_by_version is True
        assert status.update_available is True

    def test_check_versions_disabled(self, make_checker, client):
        checker = make_checker([])
        checker.check_container({
            "image": "lscr.io/linuxserver/qbittorrent:4.0.3-r0-ls168",
            "local_digest": DIGEST_A, "check_versions": False,
        })
        client.list_tags.assert_not_called()

    def test_tag_listing_failure_reported_without_update(self, make_checker, client):
        client.list_tags.return_value = TagsResult(error="Registry request timeout")
        checker = make_checker([])
        status = checker.check_container({
            "image": "lscr.io/linuxserver/qbittorrent:4.0.3-r0-ls168", "local_digest": DIGEST_A,
        })

        assert status.update_available is False
        assert status.error == "Registry request timeout"

    def test_digest_error_kept_over_tag_error(self, make_checker, client):
        client.check_update_available.return_value = UpdateVerdict(update_available=False, error="digest failed")
        client.list_tags.return_value = TagsResult(error="tags failed")
        checker = make_checker([])
        status = checker.check_container({
            "image": "lscr.io/linuxserver/qbittorrent:4.0.3-r0-ls168", "local_digest": DIGEST_A,
        })
        assert status.error == "digest failed"


class TestCheckAll:

    def test_results_in_config_order(self, make_checker):
        containers = [{"name": f"c{i}", "image": f"org/app{i}:1", "local_digest": DIGEST_A} for i in range(6)]
        checker = make_checker(containers, max_workers=3)

        results = checker.check_all()

        assert [r.name for r in results] == [f"c{i}" for i in range(6)]

    def test_empty(self, make_checker):
        assert make_checker([]).check_all() == []

    def test_concurrency_is_bounded(self, make_checker, client):
        lock = threading.Lock()
        active = {"now": 0, "peak": 0}

        def slow_check(local_digest, image_ref):
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            time.sleep(0.02)
            with lock:
                active["now"] -= 1
            return UpdateVerdict(update_available=False, remote_digest=DIGEST_A)

        client.check_update_available.side_effect = slow_check
        containers = [{"image": f"org/app{i}:1", "local_digest": DIGEST_A} for i in range(10)]
        checker = make_checker(containers, max_workers=2)

        checker.check_all()

        assert client.check_update_available.call_count == 10
        assert active["peak"] <= 2

    def test_progress_callback(self, make_checker):
        containers = [{"name": "a", "image": "org/a:1", "local_digest": DIGEST_A},
                      {"name": "b", "image": "org/b:1", "local_digest": DIGEST_A}]
        events = []
        make_checker(containers).check_all(progress_callback=lambda kind, data: events.append((kind, data)))

        assert [kind for kind, _ in events] == ["container_checked", "container_checked"]
        assert sorted(data["name"] for _, data in events) == ["a", "b"]
        assert events[-1][1]["progress"] == 2
        assert events[-1][1]["total"] == 2


class TestMain:

    def test_writes_json_results(self, write_config, tmp_path):
        config_path = write_config({"containers": [{"name": "db", "image": "postgres:15", "local_digest": DIGEST_A}]})
        output = tmp_path / "out.json"

        with patch.object(isc.RegistryClient, "check_update_available",
                          return_value=UpdateVerdict(update_available=True, remote_digest=DIGEST_B)), \
             patch("sys.argv", ["isc", config_path, "--output", str(output)]):
            assert isc.main() == 0

        results = json.loads(output.read_text())
        assert results[0]["name"] == "db"
        assert results[0]["update_available"] is True
        assert results[0]["remote_digest"] == DIGEST_B

    def test_bad_config_exits_1(self, tmp_path):
        with patch("sys.argv", ["isc", str(tmp_path / "missing.json")]):
            assert isc.main() == 1

    def test_non_integer_max_workers_env_is_usage_error(self, write_config):
        config_path = write_config({"containers": []})
        with patch.dict("os.environ", {"MAX_WORKERS": "abc"}), \
             patch("sys.argv", ["isc", config_path]):
            with pytest.raises(SystemExit) as exc:
                isc.main()
        assert exc.value.code == 2

    def test_max_workers_env_is_applied(self, write_config):
        config_path = write_config({"containers": []})
        with patch.dict("os.environ", {"MAX_WORKERS": "7"}), \
             patch("sys.argv", ["isc", config_path]), \
             patch.object(isc, "ImageStalenessChecker", wraps=isc.ImageStalenessChecker) as checker_cls:
            assert isc.main() == 0
        assert checker_cls.call_args.args[2] == 7
