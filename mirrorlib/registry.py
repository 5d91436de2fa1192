"""
RegistryInspector: what already exists in the target registry.

Every probe has three outcomes: found, not found, or indeterminate. An
indeterminate probe (auth failure, network error, unexpected status) raises
RegistryProbeIndeterminate and is never read as "not found", because a false
"missing" would trigger a spurious rebuild.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set, Union

import aiohttp
from tenacity import (before_sleep_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from mirrorlib import constants, exectools, logutil, util
from mirrorlib.exceptions import RegistryProbeIndeterminate

logger = logutil.getLogger(__name__)


class _TransientProbeError(Exception):
    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


TRANSIENT_ERRORS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError, _TransientProbeError)


@dataclass(frozen=True)
class TagPresence:
    """ Whether a tag exists, and if so which architectures it serves (arch -> single-arch digest) """
    exists: bool
    digests: Dict[str, str] = field(default_factory=dict, hash=False)

    def has_arch(self, arch: str) -> bool:
        return arch in self.digests


ABSENT = TagPresence(False)


class RegistryInspector:

    def __init__(self, session: aiohttp.ClientSession, registry: str = constants.DEFAULT_REGISTRY,
                 token: Optional[str] = None, max_parallel: int = 8, retries: int = 4, retry_wait=None):
        self.session = session
        self.registry = registry
        self.token = token
        self.max_parallel = max_parallel
        self.retries = retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    def _headers(self, accept=constants.MANIFEST_MEDIA_TYPES) -> Dict[str, str]:
        headers = {"Accept": ", ".join(accept)}
        if self.token:
            # GHCR accepts the base64 encoded token as a bearer token
            encoded = base64.b64encode(self.token.encode('utf-8')).decode('ascii')
            headers["Authorization"] = f"Bearer {encoded}"
        return headers

    def manifest_url(self, repository: str, reference: str) -> str:
        return f"https://{self.registry}/v2/{repository}/manifests/{reference}"

    def blob_url(self, repository: str, digest: str) -> str:
        return f"https://{self.registry}/v2/{repository}/blobs/{digest}"

    async def _request(self, method: str, repository: str, tag: str, url: str, read_json: bool):
        """
        :return: (status, json body or None, Docker-Content-Digest header or None); status is 200 or 404
        :raises RegistryProbeIndeterminate: for any other outcome, after retrying transient ones
        """

        @retry(reraise=True, stop=stop_after_attempt(self.retries), wait=self.retry_wait,
               retry=retry_if_exception_type(TRANSIENT_ERRORS),
               before_sleep=before_sleep_log(logger, logging.WARNING))
        async def probe():
            async with self.session.request(method, url, headers=self._headers(), allow_redirects=True) as resp:
                if resp.status == 404:
                    return 404, None, None
                if resp.status >= 500 or resp.status == 429:
                    raise _TransientProbeError(resp.status)
                if resp.status != 200:
                    raise RegistryProbeIndeterminate(repository, [tag], f"{method} {url} returned HTTP {resp.status}", status=resp.status)
                digest = resp.headers.get("Docker-Content-Digest")
                if not read_json:
                    return 200, None, digest
                return 200, await resp.json(content_type=None), digest

        try:
            return await probe()
        except TRANSIENT_ERRORS as e:
            status = e.status if isinstance(e, _TransientProbeError) else None
            raise RegistryProbeIndeterminate(repository, [tag], f"giving up after {self.retries} attempts: {e}", status=status) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise RegistryProbeIndeterminate(repository, [tag], f"{method} {url} failed: {e}") from e

    async def exists(self, repository: str, tag: str) -> bool:
        """
        HEAD probe for repository:tag.
        :raises RegistryProbeIndeterminate: when the registry cannot tell
        """
        status, _, _ = await self._request('HEAD', repository, tag, self.manifest_url(repository, tag), read_json=False)
        logger.debug("%s/%s:%s %s", self.registry, repository, tag, "exists" if status == 200 else "is absent")
        return status == 200

    async def inspect_architectures(self, repository: str, tag: str) -> TagPresence:
        """
        Reads the manifest behind repository:tag and reports which linux architectures it serves.
        Attestation entries of an index (platform unknown/unknown) are ignored.
        """
        status, manifest, manifest_digest = await self._request('GET', repository, tag, self.manifest_url(repository, tag), read_json=True)
        if status == 404:
            return ABSENT
        if not isinstance(manifest, dict):
            raise RegistryProbeIndeterminate(repository, [tag], "manifest is not a JSON object")

        media_type = manifest.get('mediaType')
        if media_type in constants.INDEX_MEDIA_TYPES or 'manifests' in manifest:
            entries = manifest.get('manifests') or []
            if not isinstance(entries, list):
                raise RegistryProbeIndeterminate(repository, [tag], "malformed manifest index")
            digests = {}
            for entry in entries:
                platform = (entry.get('platform') or {}) if isinstance(entry, dict) else None
                if not isinstance(platform, dict):
                    raise RegistryProbeIndeterminate(repository, [tag], "malformed manifest index")
                try:
                    arch = util.arch_for_platform(f"{platform.get('os')}/{platform.get('architecture')}")
                except ValueError:
                    continue  # attestations (unknown/unknown) and architectures we do not mirror
                if entry.get('digest'):
                    digests.setdefault(arch, entry['digest'])
            return TagPresence(True, digests)

        # a single-arch image: the architecture is recorded in its config blob
        config = manifest.get('config')
        config_digest = config.get('digest') if isinstance(config, dict) else None
        if not config_digest:
            raise RegistryProbeIndeterminate(repository, [tag], "image manifest has no config")
        _, config, _ = await self._request('GET', repository, tag, self.blob_url(repository, config_digest), read_json=True)
        if not isinstance(config, dict) or config.get('os', 'linux') != 'linux':
            return TagPresence(True, {})
        try:
            arch = util.oci_arch(config.get('architecture', ''))
        except ValueError:
            return TagPresence(True, {})
        # a single-arch manifest is reused as is when the multi-arch manifest is assembled
        return TagPresence(True, {arch: manifest_digest} if manifest_digest else {})

    async def probe_tags(self, repository: str, candidate_tags: Iterable[str],
                         inspect: bool = True) -> Dict[str, Union[TagPresence, RegistryProbeIndeterminate]]:
        """
        Probes every candidate tag concurrently (bounded by max_parallel).
        :param inspect: True to read per-architecture presence; False for a plain existence check
        :return: tag -> TagPresence, or the RegistryProbeIndeterminate raised for that tag
        """
        tags = list(dict.fromkeys(candidate_tags))

        @exectools.limit_concurrency(self.max_parallel)
        async def probe(tag):
            if inspect:
                return await self.inspect_architectures(repository, tag)
            return TagPresence(True) if await self.exists(repository, tag) else ABSENT

        results = await asyncio.gather(*(probe(tag) for tag in tags), return_exceptions=True)
        outcome = {}
        for tag, result in zip(tags, results):
            if isinstance(result, RegistryProbeIndeterminate):
                logger.warning("%s", result)
                outcome[tag] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[tag] = result
        return outcome

    async def list_existing_tags(self, repository: str, candidate_tags: Iterable[str]) -> Set[str]:
        """
        :return: the subset of candidate_tags present in the repository
        :raises RegistryProbeIndeterminate: if any candidate could not be probed; its `existing` attribute
                holds the tags that were proven to exist
        """
        outcome = await self.probe_tags(repository, candidate_tags, inspect=False)
        existing = {tag for tag, r in outcome.items() if isinstance(r, TagPresence) and r.exists}
        failed = [tag for tag, r in outcome.items() if isinstance(r, RegistryProbeIndeterminate)]
        if failed:
            raise RegistryProbeIndeterminate(repository, failed, f"{len(failed)} of {len(outcome)} probes were inconclusive",
                                             existing=existing)
        return existing
