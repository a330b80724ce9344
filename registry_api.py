"""Anonymous client for OCI / Docker Registry V2 HTTP APIs.

Talks directly to Docker Hub, ghcr.io and compatible registries to resolve
manifest digests and list tags without credentials.  Every public operation
returns a result object instead of raising for expected failures (bad input,
registry down, timeouts, malformed responses).
"""

import logging
import re
import urllib.parse
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", DOCKER_HUB_REGISTRY)
DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
DOCKER_HUB_SERVICE = "registry.docker.io"
GHCR_AUTH_URL = "https://ghcr.io/token"
GHCR_SERVICE = "ghcr.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
MAX_TAG_LENGTH = 64

TOKEN_TIMEOUT = 10
MANIFEST_TIMEOUT = 15
TAGS_PAGE_TIMEOUT = 15
TAGS_FIRST_PAGE_TIMEOUT = 25
TAGS_PAGE_SIZE = 500
TAGS_MAX_TOTAL = 5000

MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.v2+json, "
    "application/vnd.oci.image.manifest.v1+json"
)
DIGEST_HEADER = "Docker-Content-Digest"
CHALLENGE_HEADER = "WWW-Authenticate"

_SHA256_PREFIX = re.compile(r"^sha256:", re.IGNORECASE)


class RegistryAPIError(Exception):
    """Error talking to a registry or its token issuer."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class ParsedImageReference:
    """Components of an image reference such as ``ghcr.io/org/repo:tag``."""
    registry_host: str = ""
    repository_path: str = ""
    tag: str = ""
    normalized_ref: str = ""
    digest_pinned: bool = False


@dataclass(frozen=True)
class ManifestResult:
    digest: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.digest is not None


@dataclass(frozen=True)
class TagsResult:
    tags: Optional[List[str]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tags is not None


@dataclass(frozen=True)
class UpdateVerdict:
    update_available: bool
    remote_digest: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"update_available": self.update_available}
        if self.remote_digest is not None:
            data["remote_digest"] = self.remote_digest
        if self.error is not None:
            data["error"] = self.error
        return data


def parse_image_ref(image_ref) -> ParsedImageReference:
    """Split an image reference into registry host, repository path and tag.

    ``postgres:15-alpine`` resolves to Docker Hub's ``library/postgres`` with
    tag ``15-alpine``.  References pinned by digest (``repo@sha256:...``) are
    returned with ``digest_pinned=True`` and nothing else filled in, since
    they never need a remote lookup.

    The text after the last ``:`` is only a tag when it holds no ``/`` and is
    at most 64 characters (otherwise it is a registry port or path).  The
    first path segment is a registry host when it contains ``.`` or ``:``.
    """
    if not image_ref or not isinstance(image_ref, str):
        return ParsedImageReference()

    if '@' in image_ref:
        return ParsedImageReference(normalized_ref=image_ref, digest_pinned=True)

    tag = DEFAULT_TAG
    name = image_ref
    colon = name.rfind(':')
    if colon != -1:
        after_colon = name[colon + 1:]
        if '/' not in after_colon and len(after_colon) <= MAX_TAG_LENGTH:
            tag = after_colon
            name = name[:colon]

    parts = name.split('/')
    registry = DOCKER_HUB_REGISTRY
    path = name
    if len(parts) >= 2 and ('.' in parts[0] or ':' in parts[0]):
        registry = parts[0]
        path = '/'.join(parts[1:])
    elif len(parts) == 1 and parts[0] and '.' not in parts[0]:
        path = f"{DEFAULT_NAMESPACE}/{name}"

    return ParsedImageReference(
        registry_host=registry,
        repository_path=path,
        tag=tag,
        normalized_ref=f"{name}:{tag}",
    )


def get_registry_host(registry: str) -> str:
    """Map Docker Hub aliases to the host that serves the V2 API."""
    if registry in DOCKER_HUB_ALIASES:
        return DOCKER_HUB_REGISTRY
    return registry


def is_docker_hub(registry: str) -> bool:
    return get_registry_host(registry) == DOCKER_HUB_REGISTRY


def normalize_digest(digest: Optional[str]) -> str:
    """Strip an optional ``sha256:`` prefix so digests compare by hash only."""
    return _SHA256_PREFIX.sub('', digest or '')


def _encode_path(repository_path: str) -> str:
    return '/'.join(urllib.parse.quote(part, safe='') for part in repository_path.split('/'))


class RegistryClient:
    """Stateless registry client.

    Holds only timeouts and page limits; tokens are fetched per call and
    never kept between calls, so one instance can be shared across threads.
    """

    def __init__(self, token_timeout: float = TOKEN_TIMEOUT,
                 manifest_timeout: float = MANIFEST_TIMEOUT,
                 page_timeout: float = TAGS_PAGE_TIMEOUT,
                 first_page_timeout: float = TAGS_FIRST_PAGE_TIMEOUT,
                 page_size: int = TAGS_PAGE_SIZE,
                 max_tags: int = TAGS_MAX_TOTAL):
        self.token_timeout = token_timeout
        self.manifest_timeout = manifest_timeout
        self.page_timeout = page_timeout
        self.first_page_timeout = first_page_timeout
        self.page_size = page_size
        self.max_tags = max_tags

    def _request(self, method: str, url: str, timeout: float,
                 token: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None,
                 params: Optional[Dict[str, object]] = None) -> requests.Response:
        """Send one HTTP request.

        Returns the response whatever its status; raises
        :class:`RegistryAPIError` on timeouts and connection errors.
        """
        req_headers = dict(headers or {})
        if token:
            req_headers['Authorization'] = f'Bearer {token}'
        try:
            return requests.request(method, url, headers=req_headers, params=params,
                                    timeout=timeout, allow_redirects=True)
        except requests.Timeout:
            raise RegistryAPIError("Registry request timeout")
        except requests.RequestException as e:
            raise RegistryAPIError(str(e))

    # ── Token negotiation ─────────────────────────────────────────

    def get_token(self, repository_path: str, registry: str = DOCKER_HUB_REGISTRY) -> str:
        """Fetch an anonymous pull-scoped bearer token for *repository_path*.

        Docker Hub hosts use auth.docker.io; every other host uses ghcr.io's
        issuer.  Raises :class:`RegistryAPIError` on any failure.
        """
        if is_docker_hub(registry):
            auth_url, service, issuer = DOCKER_HUB_AUTH_URL, DOCKER_HUB_SERVICE, "Docker Hub"
        else:
            auth_url, service, issuer = GHCR_AUTH_URL, GHCR_SERVICE, "GHCR"
        params = {"service": service, "scope": f"repository:{repository_path}:pull"}

        try:
            response = requests.get(auth_url, params=params, timeout=self.token_timeout)
        except requests.Timeout:
            raise RegistryAPIError(f"{issuer} token timeout")
        except requests.RequestException as e:
            raise RegistryAPIError(f"{issuer} token request failed: {e}")

        if response.status_code >= 400:
            raise RegistryAPIError(
                f"{issuer} token request failed with HTTP {response.status_code}",
                response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise RegistryAPIError(f"Malformed {issuer} token response: {e}")

        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            raise RegistryAPIError(f"{issuer} token response carried no token")
        logger.debug(f"Obtained {issuer} pull token for {repository_path}")
        return token

    # ── Manifest digests ──────────────────────────────────────────

    def get_remote_digest(self, registry: str, repository_path: str, tag: str,
                          token: Optional[str] = None) -> ManifestResult:
        """Resolve the manifest digest for ``repository_path:tag``.

        HEAD first; on a Docker Hub auth challenge with no token, fetch one
        and HEAD once more; when HEAD succeeds without a digest header, fall
        back to GET (ghcr.io only sends the header on GET).  At most three
        requests are made.
        """
        host = get_registry_host(registry)
        url = f"https://{host}/v2/{_encode_path(repository_path)}/manifests/{urllib.parse.quote(tag, safe='')}"
        headers = {'Accept': MANIFEST_ACCEPT_HEADER}
        ref = f"{repository_path}:{tag}"

        try:
            response = self._request('HEAD', url, self.manifest_timeout, token, headers)

            if (response.status_code == 401 and is_docker_hub(host)
                    and response.headers.get(CHALLENGE_HEADER) and not token):
                logger.debug(f"Auth challenge for {ref}, fetching token")
                token = self.get_token(repository_path, host)
                response = self._request('HEAD', url, self.manifest_timeout, token, headers)

            digest = response.headers.get(DIGEST_HEADER)
            if digest:
                return ManifestResult(digest=digest)

            if response.status_code >= 400:
                return ManifestResult(error=f"Registry returned HTTP {response.status_code} for {ref}")

            logger.debug(f"HEAD for {ref} carried no digest, retrying with GET")
            response = self._request('GET', url, self.manifest_timeout, token, headers)
            digest = response.headers.get(DIGEST_HEADER)
            if digest:
                return ManifestResult(digest=digest)
            if response.status_code >= 400:
                return ManifestResult(error=f"Registry returned HTTP {response.status_code} for {ref}")
            return ManifestResult(error="No Docker-Content-Digest in response")

        except RegistryAPIError as e:
            logger.debug(f"Error resolving digest for {ref}: {e.message}")
            return ManifestResult(error=e.message)

    # ── Tag listing ───────────────────────────────────────────────

    def _fetch_tags_page(self, url: str, token: Optional[str], last: Optional[str],
                         timeout: float) -> List[str]:
        params: Dict[str, object] = {'n': self.page_size}
        if last:
            params['last'] = last
        response = self._request('GET', url, timeout, token,
                                 {'Accept': 'application/json'}, params)
        return self._parse_tags_page(response)

    @staticmethod
    def _parse_tags_page(response: requests.Response) -> List[str]:
        if response.status_code >= 400:
            raise RegistryAPIError(
                f"Registry returned HTTP {response.status_code} for tag list",
                response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise RegistryAPIError(f"Failed to parse tags list: {e}")
        if not isinstance(data, dict) or 'tags' not in data:
            raise RegistryAPIError("Tag list response has no 'tags' array")
        tags = data['tags']
        if tags is None:
            return []
        if not isinstance(tags, list):
            raise RegistryAPIError("Tag list response has no 'tags' array")
        return [t for t in tags if isinstance(t, str)]

    def list_tags(self, registry: str, repository_path: str,
                  token: Optional[str] = None) -> TagsResult:
        """List a repository's tags in registry order, following pagination.

        Stops after a short or empty page, or once ``max_tags`` tags have
        been gathered.  Any failing page discards everything collected so far.
        """
        host = get_registry_host(registry)
        url = f"https://{host}/v2/{_encode_path(repository_path)}/tags/list"

        try:
            params = {'n': self.page_size}
            response = self._request('GET', url, self.first_page_timeout, token,
                                     {'Accept': 'application/json'}, params)

            if response.status_code == 401 and response.headers.get(CHALLENGE_HEADER):
                logger.debug(f"Auth challenge listing tags for {repository_path}, fetching token")
                token = self.get_token(repository_path, host)
                page = self._fetch_tags_page(url, token, None, self.page_timeout)
            else:
                page = self._parse_tags_page(response)

            all_tags = list(page)
            while page and len(page) >= self.page_size and len(all_tags) < self.max_tags:
                page = self._fetch_tags_page(url, token, page[-1], self.page_timeout)
                all_tags.extend(page)

            logger.debug(f"Listed {len(all_tags)} tags for {repository_path}")
            return TagsResult(tags=all_tags)

        except RegistryAPIError as e:
            logger.debug(f"Error listing tags for {repository_path}: {e.message}")
            return TagsResult(error=e.message)

    # ── Update decision ───────────────────────────────────────────

    def check_update_available(self, local_digest: Optional[str],
                               image_ref: Optional[str]) -> UpdateVerdict:
        """Compare a locally known digest with the registry's digest for *image_ref*.

        Digest-pinned references are always up to date and cause no network
        traffic.  Any failure yields ``update_available=False`` with ``error``
        set; an update is never reported on incomplete information.
        """
        if not local_digest or not image_ref:
            return UpdateVerdict(update_available=False, error="Missing local digest or image reference")

        parsed = parse_image_ref(image_ref)
        if parsed.digest_pinned:
            return UpdateVerdict(update_available=False)
        if not parsed.registry_host or not parsed.repository_path:
            return UpdateVerdict(update_available=False, error="Could not parse image reference")

        token = None
        if is_docker_hub(parsed.registry_host):
            try:
                token = self.get_token(parsed.repository_path, parsed.registry_host)
            except RegistryAPIError as e:
                logger.debug(f"Docker Hub token failed: {e.message}")

        result = self.get_remote_digest(parsed.registry_host, parsed.repository_path,
                                        parsed.tag, token)
        if not result.ok:
            return UpdateVerdict(update_available=False, error=result.error)

        update_available = normalize_digest(local_digest) != normalize_digest(result.digest)
        return UpdateVerdict(update_available=update_available, remote_digest=result.digest)


def check_update_available(local_digest: Optional[str], image_ref: Optional[str]) -> UpdateVerdict:
    return RegistryClient().check_update_available(local_digest, image_ref)


def get_remote_digest(registry: str, repository_path: str, tag: str,
                      token: Optional[str] = None) -> ManifestResult:
    return RegistryClient().get_remote_digest(registry, repository_path, tag, token)


def list_tags(registry: str, repository_path: str, token: Optional[str] = None) -> TagsResult:
    return RegistryClient().list_tags(registry, repository_path, token)
