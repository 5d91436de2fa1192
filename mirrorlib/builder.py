"""
Thin adapter to the external image builder (docker buildx).

A job is built from a shallow checkout of the upstream source at the job's
ref, pushed by digest only (no tag), and answered with a BuildResult. The
tags are applied later, when the multi-arch manifest is assembled.
"""

import asyncio
import io
import json
import os
import pathlib
import re
import shutil
from typing import Iterable, List, Optional, Tuple

from mirrorlib import constants, exectools, logutil
from mirrorlib.exceptions import BuildJobFailed, MirrorFatalError
from mirrorlib.model import BuildJob, BuildResult

logger = logutil.getLogger(__name__)


def apply_dockerfile_patches(source_dir: str, patches: Iterable[Tuple[str, str, str]]):
    """
    Applies (path, pattern, replacement) regular expression rewrites to files of the checkout,
    e.g. to drop single-arch digest pins from FROM lines.
    """
    for path, pattern, replacement in patches:
        target = pathlib.Path(source_dir, path)
        if not target.is_file():
            raise FileNotFoundError(f"Cannot patch {path}: no such file in the source checkout")
        content = target.read_text(encoding='utf-8')
        patched, count = re.subn(pattern, replacement, content, flags=re.MULTILINE)
        logger.debug("Patched %s: %s replacement(s) of %s", path, count, pattern)
        target.write_text(patched, encoding='utf-8')


class ImageBuilder:

    def __init__(self, working_dir: str, timeout: float = constants.BUILD_TIMEOUT, keep_sources: bool = False):
        self.working_dir = working_dir
        self.timeout = timeout
        self.keep_sources = keep_sources

    def buildx_command(self, job: BuildJob, source_dir: str, metadata_file: str) -> List[str]:
        cmd = [
            'docker', 'buildx', 'build',
            '--platform', job.platform,
            '--file', os.path.join(source_dir, job.dockerfile),
            '--provenance', 'false',
            '--output', f'type=image,name={job.image},push-by-digest=true,name-canonical=true,push=true',
            '--metadata-file', metadata_file,
        ]
        for name, value in sorted(job.build_args.items()):
            cmd.extend(['--build-arg', f'{name}={value}'])
        cmd.append(os.path.join(source_dir, job.context))
        return cmd

    async def checkout(self, job: BuildJob, source_dir: str):
        if os.path.isdir(source_dir):
            shutil.rmtree(source_dir)
        os.makedirs(os.path.dirname(source_dir), exist_ok=True)
        await exectools.cmd_assert_async(
            ['git', 'clone', '--depth', '1', '--branch', job.source_ref, job.source_repository, source_dir],
            retries=3, pollrate=10, set_env={**os.environ, 'GIT_TERMINAL_PROMPT': '0'})

    async def build(self, job: BuildJob) -> BuildResult:
        """
        Builds and pushes one single-arch image. Failures are returned, not raised, so that one failed
        job never disturbs the others.
        """
        source_dir = os.path.join(self.working_dir, 'sources', job.key)
        metadata_file = os.path.join(self.working_dir, 'metadata', f'{job.key}.json')
        os.makedirs(os.path.dirname(metadata_file), exist_ok=True)
        try:
            logger.info("Building %s for %s on %s", job.component, job.platform, job.runner)
            await self.checkout(job, source_dir)
            apply_dockerfile_patches(source_dir, job.dockerfile_patches)
            await exectools.cmd_assert_async(self.buildx_command(job, source_dir, metadata_file), timeout=self.timeout)
            with io.open(metadata_file, 'r', encoding='utf-8') as f:
                digest = json.load(f).get('containerimage.digest')
            if not digest:
                raise ValueError(f"buildx did not report a digest in {metadata_file}")
            logger.info("Built %s: %s@%s", job.key, job.image, digest)
            return BuildResult(job=job, digest=digest)
        except (ChildProcessError, OSError, ValueError, asyncio.TimeoutError) as e:
            failure = BuildJobFailed(job.component, str(job.version), job.arch, str(e) or type(e).__name__)
            logger.error("%s", failure)
            return BuildResult(job=job, error=str(failure))
        finally:
            if not self.keep_sources:
                shutil.rmtree(source_dir, ignore_errors=True)


def write_result(results_dir: str, result: BuildResult) -> str:
    """ Stores a result where the merge step (possibly another CI job) can collect it """
    os.makedirs(results_dir, exist_ok=True)
    path = os.path.join(results_dir, f'{result.job.key}.json')
    with io.open(path, 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2, sort_keys=True)
    return path


def read_results(results_dir: str, component: Optional[str] = None) -> List[BuildResult]:
    """
    Loads every result file in results_dir (optionally only those of one component).
    :raises MirrorFatalError: on a malformed file
    """
    results = []
    if not os.path.isdir(results_dir):
        return results
    for path in sorted(pathlib.Path(results_dir).glob('*.json')):
        try:
            with io.open(path, 'r', encoding='utf-8') as f:
                result = BuildResult.from_dict(json.load(f))
        except (ValueError, TypeError) as e:
            raise MirrorFatalError(f"Malformed build result {path}: {e}")
        if component is None or result.job.component == component:
            results.append(result)
    return results
