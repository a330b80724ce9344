#!/usr/bin/env python3
"""
Image Staleness Check

Determines whether running containers use stale images by comparing their
local image digests (and, where available, their version labels and tags)
with what the upstream registry currently serves.  No registry credentials
are needed: Docker Hub and ghcr.io are queried anonymously.
"""

__version__ = "1.0.0"

import json
import sys
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Any
from pathlib import Path
from dataclasses import dataclass, asdict
import argparse
import os
import jsonschema

from registry_api import RegistryClient, normalize_digest, parse_image_ref
from versions import (
    DIALECT_PLAIN,
    compare_version_parts,
    extract_version_from_label,
    get_newest_version_tag,
    parse_version_from_string,
    parse_version_from_tag,
)


# Constants
DEFAULT_MAX_WORKERS = 4
MAX_WORKERS_LIMIT = 32
DEFAULT_SKIP_LABELS = ["com.dockerfleet.skip-update", "com.dockerfleet.dev"]
DEFAULT_VERSION_LABELS = ["org.opencontainers.image.version", "build_version"]
SHORT_DIGEST_LENGTH = 12

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "max_workers": {"type": "integer", "minimum": 1, "maximum": MAX_WORKERS_LIMIT},
        "skip_labels": {"type": "array", "items": {"type": "string"}},
        "version_labels": {"type": "array", "items": {"type": "string"}},
        "containers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "image": {"type": "string", "minLength": 1},
                    "local_digest": {"type": "string"},
                    "labels": {
                        "type": "object",
                        "additionalProperties": {"type": "string"}
                    },
                    "check_versions": {"type": "boolean"}
                },
                "required": ["image"]
            }
        }
    },
    "required": ["containers"]
}


@dataclass
class ContainerStatus:
    """Update status for one container."""
    name: str
    image_ref: str
    pinned: bool = False
    update_available: bool = False
    remote_digest: Optional[str] = None
    current_digest: Optional[str] = None
    current_digest_short: Optional[str] = None
    current_tag: Optional[str] = None
    resolved_version: Optional[str] = None
    newest_tag: Optional[str] = None
    update_available_by_version: bool = False
    resolved_newer_than_tag_list: bool = False
    error: Optional[str] = None
    reason: Optional[str] = None


class ImageStalenessChecker:
    def __init__(self, config_file: str, log_level: str = "INFO",
                 max_workers: Optional[int] = None,
                 client: Optional[RegistryClient] = None):
        """
        Initialize the checker.

        Args:
            config_file: Path to JSON configuration file
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            max_workers: Overrides the config's concurrency cap
            client: Registry client to use (a default one is built if omitted)
        """
        self.config_file = Path(config_file)
        self.logger = self._setup_logging(log_level)
        self.client = client or RegistryClient()
        self.config = self._load_config()

        if max_workers is None:
            max_workers = self.config.get('max_workers', DEFAULT_MAX_WORKERS)
        self.max_workers = max(1, min(int(max_workers), MAX_WORKERS_LIMIT))
        self.skip_labels = self.config.get('skip_labels', DEFAULT_SKIP_LABELS)
        self.version_labels = self.config.get('version_labels', DEFAULT_VERSION_LABELS)

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        logger = logging.getLogger('isc')
        logger.setLevel(getattr(logging, level.upper()))
        logger.propagate = False

        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S %Z'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration from JSON file."""
        try:
            with open(self.config_file, 'r') as f:
                config = json.load(f)

            jsonschema.validate(config, CONFIG_SCHEMA)
            return config

        except FileNotFoundError:
            self.logger.error(f"Config file {self.config_file} not found")
            raise
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing config file: {e}")
            raise
        except jsonschema.ValidationError as e:
            self.logger.error(f"Configuration validation failed: {e.message}")
            raise

    def _pinned_label(self, labels: Dict[str, str]) -> Optional[str]:
        for label in self.skip_labels:
            if labels.get(label):
                return label
        return None

    def _resolve_label_version(self, labels: Dict[str, str]) -> Optional[str]:
        """Return the first version string found in the configured labels."""
        for label in self.version_labels:
            text = extract_version_from_label(labels.get(label))
            if text and parse_version_from_string(text):
                return text
        return None

    def check_container(self, entry: Dict[str, Any]) -> ContainerStatus:
        """Check one container for an image update.

        Combines the digest comparison with version evidence from image
        labels and the registry's tag list.
        """
        image_ref = entry['image']
        name = entry.get('name') or image_ref
        labels = entry.get('labels') or {}
        local_digest = entry.get('local_digest')
        status = ContainerStatus(name=name, image_ref=image_ref, current_digest=local_digest)

        pinned_by = self._pinned_label(labels)
        if pinned_by:
            self.logger.info(f"{name}: skipped (label {pinned_by})")
            status.pinned = True
            status.reason = f"Excluded from update checks by label {pinned_by}"
            return status

        parsed = parse_image_ref(image_ref)
        if parsed.digest_pinned:
            status.reason = "Image reference is pinned by digest"
            return status

        status.current_tag = parsed.tag or None
        if local_digest:
            status.current_digest_short = normalize_digest(local_digest)[:SHORT_DIGEST_LENGTH]
            verdict = self.client.check_update_available(local_digest, image_ref)
            status.update_available = verdict.update_available
            status.remote_digest = verdict.remote_digest
            status.error = verdict.error
        else:
            status.error = "No local digest known for container"

        if entry.get('check_versions', True):
            self._apply_version_evidence(status, parsed, labels)

        if status.update_available_by_version:
            status.update_available = True

        if status.error:
            self.logger.warning(f"{name}: could not fully determine update status: {status.error}")
        elif status.update_available:
            self.logger.info(f"UPDATE AVAILABLE: {name} ({image_ref})")
        else:
            self.logger.info(f"{name}: up to date")
        return status

    def _apply_version_evidence(self, status: ContainerStatus, parsed, labels: Dict[str, str]) -> None:
        resolved = self._resolve_label_version(labels)
        if resolved:
            current = parse_version_from_string(resolved)
            status.resolved_version = resolved
        else:
            current = parse_version_from_tag(parsed.tag)
        if not current:
            self.logger.debug(f"{status.name}: no version information, skipping tag comparison")
            return

        result = self.client.list_tags(parsed.registry_host, parsed.repository_path)
        if not result.ok:
            self.logger.debug(f"{status.name}: tag listing failed: {result.error}")
            if not status.error:
                status.error = result.error
            return

        newest = get_newest_version_tag(result.tags)
        if not newest:
            return
        status.newest_tag = newest.tag

        # Ordering is only defined within one tag dialect
        if newest.version.dialect != current.dialect and current.dialect != DIALECT_PLAIN:
            self.logger.debug(
                f"{status.name}: current version is {current.dialect}, newest tag is "
                f"{newest.version.dialect}; not comparing"
            )
            return

        if current.dialect == DIALECT_PLAIN:
            # A plain X.Y.Z label says nothing about revision or build
            newest_release = (newest.version.major, newest.version.minor, newest.version.patch)
            current_release = (current.major, current.minor, current.patch)
            cmp = (newest_release > current_release) - (newest_release < current_release)
        else:
            cmp = compare_version_parts(newest.version, current)
        status.update_available_by_version = cmp > 0
        status.resolved_newer_than_tag_list = cmp < 0

    def check_all(self, progress_callback=None) -> List[ContainerStatus]:
        """Check every configured container, at most ``max_workers`` at a time.

        Args:
            progress_callback: Optional function(event_type, data) called as
                each container finishes

        Returns:
            Statuses in configuration order
        """
        containers = self.config.get('containers', [])
        if not containers:
            self.logger.info("No containers configured")
            return []

        results: List[Optional[ContainerStatus]] = [None] * len(containers)
        workers = min(self.max_workers, len(containers))
        self.logger.info(f"Checking {len(containers)} container(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.check_container, entry): idx
                for idx, entry in enumerate(containers)
            }
            done = 0
            for future in as_completed(futures):
                idx = futures[future]
                status = future.result()
                results[idx] = status
                done += 1
                if progress_callback:
                    progress_callback('container_checked', {
                        'name': status.name,
                        'update_available': status.update_available,
                        'progress': done,
                        'total': len(containers)
                    })

        updates = [s for s in results if s.update_available]
        if updates:
            self.logger.info("=== Update Summary ===")
            for s in updates:
                detail = f" -> {s.newest_tag}" if s.update_available_by_version and s.newest_tag else ""
                self.logger.info(f"{s.name}: {s.image_ref}{detail}")
        else:
            self.logger.info("No updates found")

        return results


def main():
    parser = argparse.ArgumentParser(
        description='Check running container images against their registries'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE', 'config.json'),
        help='Path to configuration JSON file (env: CONFIG_FILE, default: config.json)'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=os.environ.get('MAX_WORKERS') or None,
        help=f'Concurrent registry checks (env: MAX_WORKERS, default: config or {DEFAULT_MAX_WORKERS})'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--output',
        help='Write JSON results to this file instead of stdout'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args()

    try:
        checker = ImageStalenessChecker(args.config, args.log_level, args.max_workers)
    except (FileNotFoundError, json.JSONDecodeError, jsonschema.ValidationError):
        return 1

    results = [asdict(s) for s in checker.check_all()]
    payload = json.dumps(results, indent=2)
    if args.output:
        Path(args.output).write_text(payload + "\n")
        checker.logger.info(f"Results written to {args.output}")
    else:
        print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
