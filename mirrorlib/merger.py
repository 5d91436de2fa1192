"""
ManifestMerger: regroups per-(version, arch) build digests by version and
turns each complete group into a multi-arch manifest under its tag set.
"""

import json
from typing import Dict, Iterable, List, Optional

from mirrorlib import constants, exectools, logutil
from mirrorlib.exceptions import IncompleteMergeGroup
from mirrorlib.model import BuildResult, ManifestPlan, MergeGroup
from mirrorlib.planner import VersionPlan
from mirrorlib.version import SemanticVersion

logger = logutil.getLogger(__name__)


def tags_for(version: SemanticVersion, is_latest: bool) -> List[str]:
    tags = [str(version)]
    if is_latest:
        tags.append(constants.LATEST_TAG)
    return tags


class ManifestMerger:

    def __init__(self, dry_run: bool = False, push_retries: int = 3):
        self.dry_run = dry_run
        self.push_retries = push_retries

    def group(self, build_results: Iterable[BuildResult], plan: VersionPlan) -> List[MergeGroup]:
        """
        Groups results by version. "latest" is taken from the plan, never recomputed from the results,
        so a failed build cannot move the latest tag. Digests of architectures already present in the
        registry seed the group.
        :raises ValueError: for a result that does not belong to the plan
        """
        digests: Dict[SemanticVersion, Dict[str, str]] = {
            version: dict(plan.existing_digests.get(version, {})) for version in plan.versions_to_build
        }
        for result in build_results:
            job = result.job
            if job.component != plan.component or job.version not in digests:
                raise ValueError(f"Build result {job.key} is not part of the plan for {plan.component}")
            if result.succeeded:
                digests[job.version][job.arch] = result.digest
            else:
                logger.warning("%s: no digest for %s: %s", job.component, job.key, result.error)

        return [
            MergeGroup(
                component=plan.component,
                version=version,
                is_latest=version == plan.latest_version,
                planned_arches=tuple(plan.architectures),
                digests_by_arch=by_arch,
            )
            for version, by_arch in digests.items()
        ]

    def plan(self, group: MergeGroup, image: str) -> ManifestPlan:
        """
        :raises IncompleteMergeGroup: if any planned architecture has no digest
        """
        if not group.is_complete:
            raise IncompleteMergeGroup(group.component, str(group.version), group.missing_arches or group.planned_arches)
        return ManifestPlan(
            component=group.component,
            image=image,
            version=group.version,
            tags=tuple(tags_for(group.version, group.is_latest)),
            source_digests={arch: group.digests_by_arch[arch] for arch in group.planned_arches},
        )

    async def push(self, manifest: ManifestPlan) -> Optional[str]:
        """
        Creates the multi-arch manifest and pushes it under every tag of the plan.
        :return: the digest of the pushed manifest list (None in dry-run mode)
        """
        cmd = ['docker', 'buildx', 'imagetools', 'create']
        for pullspec in manifest.pullspecs:
            cmd.extend(['-t', pullspec])
        cmd.extend(manifest.references)
        if self.dry_run:
            logger.info("[dry-run] Would have run: %s", ' '.join(cmd))
            return None
        logger.info("Pushing %s", ', '.join(manifest.pullspecs))
        await exectools.cmd_assert_async(cmd, retries=self.push_retries, pollrate=10)
        return await self.find_manifest_list_digest(manifest.pullspecs[0])

    async def find_manifest_list_digest(self, pullspec: str) -> str:
        out, _ = await exectools.cmd_assert_async(
            ['docker', 'buildx', 'imagetools', 'inspect', pullspec, '--format', '{{json .Manifest}}'], retries=3, pollrate=10)
        manifest = json.loads(out)
        if 'digest' not in manifest:
            raise ValueError(f'{pullspec} has no manifest digest')
        return manifest['digest']
