"""
AttestationCoordinator: asks the external signer (cosign) to sign a pushed
manifest and attach its SBOM and provenance.

Attestation is additive metadata, not a publication gate. The three
operations are independent and individually retried; a failure in one does
not stop the others and never unpublishes the image. Partial failure is
reported to the caller.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from tenacity import (before_sleep_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from mirrorlib import exectools, logutil
from mirrorlib.exceptions import AttestationPartialFailure

logger = logutil.getLogger(__name__)

Predicate = Union[str, os.PathLike, Dict[str, Any]]

SIGN = 'sign'
SBOM = 'sbom'
PROVENANCE = 'provenance'


@dataclass
class AttestationResult:
    signed: bool = False
    sbom_attached: bool = False
    provenance_attached: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.signed and self.sbom_attached and self.provenance_attached

    def failure(self, image_reference: str) -> Optional[AttestationPartialFailure]:
        return AttestationPartialFailure(image_reference, self.errors) if not self.complete else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signed': self.signed,
            'sbom_attached': self.sbom_attached,
            'provenance_attached': self.provenance_attached,
            'errors': dict(self.errors),
        }


class AttestationCoordinator:

    def __init__(self, cosign: str = 'cosign', syft: str = 'syft', key: Optional[str] = None, retries: int = 3, retry_wait=None,
                 dry_run: bool = False, timeout: float = 600):
        self.cosign = cosign
        self.syft = syft
        self.key = key
        self.retries = retries
        self.retry_wait = retry_wait or wait_exponential(multiplier=2, min=2, max=30)
        self.dry_run = dry_run
        self.timeout = timeout

    def _key_args(self):
        # keyless (OIDC) signing when no key is configured
        return ['--key', self.key] if self.key else []

    async def _run(self, operation: str, cmd):
        if self.dry_run:
            logger.info("[dry-run] Would have run: %s", ' '.join(str(c) for c in cmd))
            return

        @retry(reraise=True, stop=stop_after_attempt(self.retries), wait=self.retry_wait,
               retry=retry_if_exception_type((ChildProcessError, asyncio.TimeoutError)),
               before_sleep=before_sleep_log(logger, logging.WARNING))
        async def run():
            await exectools.cmd_assert_async(cmd, timeout=self.timeout)

        logger.debug("Running %s: %s", operation, cmd)
        await run()

    async def sign(self, image_reference: str):
        await self._run(SIGN, [self.cosign, 'sign', '--yes', *self._key_args(), image_reference])

    async def attach_sbom(self, image_reference: str, predicate_path: str):
        await self._run(SBOM, [self.cosign, 'attest', '--yes', *self._key_args(), '--type', 'spdxjson',
                               '--predicate', predicate_path, image_reference])

    async def scan_and_attach_sbom(self, image_reference: str, output_path: str):
        """ Has the external scanner (syft) produce an SPDX document for the image, then attaches it """
        await self._run(SBOM, [self.syft, 'scan', f'registry:{image_reference}', '-o', f'spdx-json={output_path}'])
        await self.attach_sbom(image_reference, output_path)

    async def attach_provenance(self, image_reference: str, predicate_path: str):
        await self._run(PROVENANCE, [self.cosign, 'attest', '--yes', *self._key_args(), '--type', 'slsaprovenance',
                                     '--predicate', predicate_path, image_reference])

    async def attest(self, image_reference: str, sbom_predicate: Optional[Predicate], provenance_predicate: Predicate) -> AttestationResult:
        """
        Signs image_reference and attaches both predicates. Never raises for a failed operation;
        failures are listed in the result.
        :param image_reference: a digest reference (registry/repo@sha256:...)
        :param sbom_predicate: path to an SPDX JSON document, or the document itself; None to have the scanner produce it
        :param provenance_predicate: path to a SLSA provenance predicate, or the predicate itself
        """
        with tempfile.TemporaryDirectory(prefix='mirror-attest-') as tmpdir:
            if sbom_predicate is None:
                sbom_path = os.path.join(tmpdir, 'sbom.spdx.json')
                sbom_step = self.scan_and_attach_sbom(image_reference, sbom_path)
            else:
                sbom_step = self.attach_sbom(image_reference, _predicate_path(sbom_predicate, os.path.join(tmpdir, 'sbom.json')))
            provenance_path = _predicate_path(provenance_predicate, os.path.join(tmpdir, 'provenance.json'))
            outcomes = await asyncio.gather(
                self.sign(image_reference),
                sbom_step,
                self.attach_provenance(image_reference, provenance_path),
                return_exceptions=True,
            )

        result = AttestationResult()
        for operation, outcome in zip((SIGN, SBOM, PROVENANCE), outcomes):
            if isinstance(outcome, (ChildProcessError, asyncio.TimeoutError, OSError)):
                result.errors[operation] = str(outcome) or type(outcome).__name__
            elif isinstance(outcome, BaseException):
                raise outcome
        result.signed = SIGN not in result.errors
        result.sbom_attached = SBOM not in result.errors
        result.provenance_attached = PROVENANCE not in result.errors

        failure = result.failure(image_reference)
        if failure:
            logger.warning("%s", failure)
        else:
            logger.info("Signed and attested %s", image_reference)
        return result


def _predicate_path(predicate: Predicate, scratch_path: str) -> str:
    if isinstance(predicate, dict):
        with open(scratch_path, 'w', encoding='utf-8') as f:
            json.dump(predicate, f)
        return scratch_path
    return os.fspath(predicate)


def provenance_predicate(manifest, jobs) -> Dict[str, Any]:
    """
    A SLSA v0.2 provenance predicate describing how the single-arch images behind a manifest were built.
    :param manifest: the pushed ManifestPlan
    :param jobs: the BuildJobs that produced its digests (architectures reused from the registry have none)
    """
    jobs = sorted(jobs, key=lambda j: j.arch)
    materials = []
    for job in jobs:
        uri = f"git+{job.source_repository}@{job.source_ref}"
        if job.source_repository and uri not in [m['uri'] for m in materials]:
            materials.append({'uri': uri})
    return {
        'builder': {'id': 'https://github.com/docker/buildx'},
        'buildType': 'https://mobyproject.org/buildkit@v1',
        'invocation': {
            'parameters': {
                job.arch: {
                    'platform': job.platform,
                    'dockerfile': job.dockerfile,
                    'context': job.context,
                    'build_args': dict(job.build_args),
                } for job in jobs
            },
        },
        'metadata': {
            'completeness': {'parameters': True, 'environment': False, 'materials': bool(materials)},
            'reproducible': False,
        },
        'materials': materials,
        'subject': [{'name': manifest.image, 'tags': list(manifest.tags),
                     'digests': dict(manifest.source_digests)}],
    }
