"""
The reconciliation loop: desired state (the upstream window) minus actual
state (the registry), acting only on the difference.

Failures are isolated at two levels. A project whose upstream is unavailable
does not stop the other projects, and within a project each version is built,
merged and attested on its own, so one bad version never blocks the others.
A version is merged as soon as its own jobs are done, whatever the state of
the other versions.
"""

import asyncio
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Set

from mirrorlib import logutil, state
from mirrorlib.attestation import AttestationCoordinator, provenance_predicate
from mirrorlib.builder import ImageBuilder
from mirrorlib.config import ComponentConfig, MirrorConfig, ProjectConfig
from mirrorlib.exceptions import IncompleteMergeGroup, UpstreamUnavailable
from mirrorlib.matrix import MatrixExpander
from mirrorlib.merger import ManifestMerger, tags_for
from mirrorlib.model import BuildJob, BuildResult
from mirrorlib.planner import VersionPlan, VersionPlanner
from mirrorlib.version import SemanticVersion

logger = logutil.getLogger(__name__)


class Reconciler:

    def __init__(self, config: MirrorConfig, planner: VersionPlanner, builder: ImageBuilder,
                 merger: ManifestMerger, attestor: Optional[AttestationCoordinator] = None,
                 run_state: Optional[Dict] = None, dry_run: bool = False):
        self.config = config
        self.planner = planner
        self.builder = builder
        self.merger = merger
        self.attestor = attestor
        self.state = run_state if run_state is not None else dict(state.TEMPLATE_BASE_STATE)
        self.dry_run = dry_run
        self.expander = MatrixExpander(config.arch_to_runner(), config.template_vars())
        self._build_slots: Optional[asyncio.Semaphore] = None

    async def reconcile(self, project_names: Optional[Iterable[str]] = None,
                        only_versions: Optional[Iterable[SemanticVersion]] = None) -> Dict:
        """
        Reconciles the named projects (all configured projects by default) concurrently.
        :return: the run state
        """
        names = list(project_names or self.config.projects)
        projects = [self.config.project(name) for name in names]
        self._build_slots = asyncio.Semaphore(self.config.max_parallel_builds)
        await asyncio.gather(*(self.reconcile_project(p, only_versions) for p in projects))
        state.record_finish(self.state)
        return self.state

    async def reconcile_project(self, project: ProjectConfig, only_versions: Optional[Iterable[SemanticVersion]] = None):
        state.init_project(self.state, project.name)
        try:
            plans = await self.planner.plan(project, only_versions)
        except UpstreamUnavailable as e:
            # no partial window is ever used
            state.record_project_unavailable(self.state, project.name, str(e), logger=logger)
            return
        except Exception as e:
            logger.exception("Planning %s failed", project.name)
            state.record_project_fail(self.state, project.name, f"planning failed: {e}")
            return

        # components are handled in dependency order, so a base image is published before its dependants build
        failed_by_component: Dict[str, Set[SemanticVersion]] = {}
        try:
            for plan in plans:
                component = project.component(plan.component)
                blocked = failed_by_component.get(component.depends_on, set()) if component.depends_on else set()
                failed_by_component[component.name] = await self.reconcile_component(project, component, plan, blocked)
        except Exception as e:
            logger.exception("Reconciling %s failed", project.name)
            state.record_project_fail(self.state, project.name, str(e))
            return
        state.record_project_finish(self.state, project.name)

    async def reconcile_component(self, project: ProjectConfig, component: ComponentConfig, plan: VersionPlan,
                                  blocked: Set[SemanticVersion] = frozenset()) -> Set[SemanticVersion]:
        """
        :param blocked: versions whose dependency could not be published this run
        :return: the versions of this component which are not available in the registry after this run
        """
        for version in plan.up_to_date_versions:
            state.record_version(self.state, project.name, component.name, version, state.SKIPPED_EXISTS,
                                 tags=self._tags(plan, version))
        for version, reason in plan.indeterminate.items():
            state.record_version(self.state, project.name, component.name, version, state.INDETERMINATE, reason, logger=logger)
        unavailable = set(plan.indeterminate)
        if plan.nothing_to_build:
            return unavailable

        jobs_by_version: Dict[SemanticVersion, List[BuildJob]] = OrderedDict()
        for job in self.expander.expand_plan(plan, component):
            jobs_by_version.setdefault(job.version, []).append(job)

        for version in list(jobs_by_version):
            if version in blocked:
                msg = f"dependency {component.depends_on} {version} is not available"
                state.record_version(self.state, project.name, component.name, version, state.FAILED, msg, logger=logger)
                unavailable.add(version)
                del jobs_by_version[version]

        if self.dry_run:
            for version, jobs in jobs_by_version.items():
                logger.info("[dry-run] %s %s: would build %s", component.name, version, ', '.join(j.arch for j in jobs))
                state.record_version(self.state, project.name, component.name, version, state.PLANNED,
                                     arches=[j.arch for j in jobs], tags=self._tags(plan, version))
            return unavailable

        published = await asyncio.gather(*(self.reconcile_version(project, plan, version, jobs)
                                           for version, jobs in jobs_by_version.items()))
        unavailable.update(v for v, ok in zip(jobs_by_version, published) if not ok)
        return unavailable

    def _tags(self, plan: VersionPlan, version: SemanticVersion) -> List[str]:
        return tags_for(version, version == plan.latest_version)

    async def _build(self, job: BuildJob) -> BuildResult:
        slots = self._build_slots or asyncio.Semaphore(self.config.max_parallel_builds)
        async with slots:
            return await self.builder.build(job)

    async def reconcile_version(self, project: ProjectConfig, plan: VersionPlan, version: SemanticVersion,
                                jobs: List[BuildJob]) -> bool:
        """
        Builds every missing architecture of one version, then merges, pushes and attests it.
        :return: True if the version is published
        """
        vlogger = logutil.entity_logger(logger, f"{plan.component}:{version}")
        # barrier for this version only
        results = await asyncio.gather(*(self._build(job) for job in jobs))
        failures = [r.error for r in results if not r.succeeded]

        group = next(g for g in self.merger.group(results, plan) if g.version == version)
        try:
            manifest = self.merger.plan(group, plan.image)
        except IncompleteMergeGroup as e:
            outcome = state.FAILED if failures else state.INCOMPLETE
            msg = '; '.join(failures) if failures else str(e)
            state.record_version(self.state, project.name, plan.component, version, outcome, msg,
                                 missing=list(e.missing_arches), logger=vlogger)
            return False

        try:
            manifest_digest = await self.merger.push(manifest)
        except (ChildProcessError, ValueError, asyncio.TimeoutError) as e:
            state.record_version(self.state, project.name, plan.component, version, state.FAILED,
                                 f"manifest push failed: {e}", logger=vlogger)
            return False

        vlogger.info("Published %s", ', '.join(manifest.pullspecs))
        state.record_version(self.state, project.name, plan.component, version, state.BUILT,
                             tags=list(manifest.tags), digest=manifest_digest,
                             arches=sorted(manifest.source_digests))

        if self.attestor and manifest_digest:
            reference = f"{plan.image}@{manifest_digest}"
            attestation = await self.attestor.attest(reference, None, provenance_predicate(manifest, jobs))
            state.record_attestation(self.state, project.name, plan.component, version, attestation, logger=vlogger)
        return True
