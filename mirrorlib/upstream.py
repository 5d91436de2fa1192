"""
VersionSource: the released versions of an upstream project, read from its
forge's release API (GitHub or GitLab) and normalized into ReleaseRecords.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from tenacity import (before_sleep_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from mirrorlib import constants, logutil
from mirrorlib.config import ProjectConfig
from mirrorlib.exceptions import UpstreamUnavailable
from mirrorlib.version import ReleaseRecord

logger = logutil.getLogger(__name__)


class TransientHTTPError(Exception):
    """A response worth retrying (5xx or rate limited)"""
    def __init__(self, url: str, status: int):
        super().__init__(f"{url} returned HTTP {status}")
        self.status = status


TRANSIENT_ERRORS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError, TransientHTTPError)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


class VersionSource:
    """
    Lists releases of upstream projects.

    :param session: an aiohttp session shared by the run
    :param fetch_size: the maximum number of upstream releases read per project
    :param tokens: provider name -> API token
    """

    def __init__(self, session: aiohttp.ClientSession, fetch_size: int = constants.DEFAULT_FETCH_SIZE,
                 tokens: Optional[Dict[str, str]] = None, retries: int = 5, retry_wait=None):
        if fetch_size <= 0:
            raise ValueError("fetch_size must be positive")
        self.session = session
        self.fetch_size = fetch_size
        self.tokens = tokens or {}
        self.retries = retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=30)

    def _headers(self, provider: str) -> Dict[str, str]:
        token = self.tokens.get(provider)
        if provider == 'github':
            headers = {"Accept": "application/vnd.github.v3+json"}
            if token:
                headers["Authorization"] = f"Bearer {token}"
        else:
            headers = {"Accept": "application/json"}
            if token:
                headers["PRIVATE-TOKEN"] = token
        return headers

    def _releases_url(self, project: ProjectConfig) -> str:
        upstream = project.upstream
        if upstream.provider == 'github':
            return f"{upstream.api_url}/repos/{upstream.repository}/releases"
        return f"{upstream.api_url}/projects/{quote(upstream.repository, safe='')}/releases"

    async def _get_json(self, project: ProjectConfig, url: str, params: Optional[Dict[str, Any]] = None):
        """ GET url, retrying transient failures. Returns None on 404. """

        @retry(reraise=True, stop=stop_after_attempt(self.retries), wait=self.retry_wait,
               retry=retry_if_exception_type(TRANSIENT_ERRORS),
               before_sleep=before_sleep_log(logger, logging.WARNING))
        async def fetch():
            async with self.session.get(url, params=params, headers=self._headers(project.upstream.provider)) as resp:
                if resp.status == 404:
                    return None
                if resp.status >= 500 or resp.status == 429:
                    raise TransientHTTPError(url, resp.status)
                if resp.status >= 400:
                    raise UpstreamUnavailable(project.name, f"{url} returned HTTP {resp.status}")
                try:
                    return await resp.json()
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise UpstreamUnavailable(project.name, f"{url} did not return JSON: {e}") from e

        try:
            return await fetch()
        except TRANSIENT_ERRORS as e:
            raise UpstreamUnavailable(project.name, f"giving up after {self.retries} attempts: {e}") from e
        except aiohttp.ClientError as e:
            raise UpstreamUnavailable(project.name, f"GET {url} failed: {e}") from e

    def _to_record(self, project: ProjectConfig, release: Dict[str, Any]) -> Optional[ReleaseRecord]:
        if not isinstance(release, dict) or not release.get('tag_name'):
            logger.warning("Ignoring malformed release entry from %s: %r", project.upstream.repository, release)
            return None
        if project.upstream.provider == 'github':
            # drafts are not releases yet
            is_prerelease = bool(release.get('prerelease')) or bool(release.get('draft'))
            published_at = _parse_timestamp(release.get('published_at'))
        else:
            is_prerelease = bool(release.get('upcoming_release'))
            published_at = _parse_timestamp(release.get('released_at'))
        return project.tag_pattern.to_record(release['tag_name'], is_prerelease=is_prerelease, published_at=published_at)

    async def iter_releases(self, project: ProjectConfig) -> AsyncIterator[ReleaseRecord]:
        """
        Lazily pages through upstream releases, newest first as returned by the API, yielding those whose
        tag matches the project's pattern. At most fetch_size upstream releases are read.
        """
        url = self._releases_url(project)
        per_page = min(self.fetch_size, constants.GITHUB_MAX_PAGE_SIZE)
        seen = 0
        page = 1
        while seen < self.fetch_size:
            releases = await self._get_json(project, url, params={"per_page": per_page, "page": page})
            if releases is None:
                raise UpstreamUnavailable(project.name, f"{url} does not exist")
            if not isinstance(releases, list):
                raise UpstreamUnavailable(project.name, f"{url} returned unexpected content")
            for release in releases[:self.fetch_size - seen]:
                seen += 1
                record = self._to_record(project, release)
                if record:
                    yield record
            if len(releases) < per_page:
                break
            page += 1

    async def list_releases(self, project: ProjectConfig) -> List[ReleaseRecord]:
        """
        :return: the qualifying releases of the project; an empty list when upstream answered but no tag matched
        :raises UpstreamUnavailable: if the release API cannot be read
        """
        records = [record async for record in self.iter_releases(project)]
        logger.info("%s: %s upstream releases match %s", project.name, len(records), project.tag_pattern.regex.pattern)
        return records

    async def latest_release(self, project: ProjectConfig) -> Optional[ReleaseRecord]:
        """
        Upstream's own notion of the latest release. Only used for reporting: the mirror's
        "latest" is the numerically greatest version, which may differ.
        """
        if project.upstream.provider == 'github':
            url = f"{self._releases_url(project)}/latest"
        else:
            url = f"{self._releases_url(project)}/permalink/latest"
        release = await self._get_json(project, url)
        return self._to_record(project, release) if release else None
