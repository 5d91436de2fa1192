"""
VersionPlanner: computes, for one project, the window of tracked versions,
the semantic "latest", and the (version, arch) pairs missing from the
registry.

Nothing is persisted between runs; the registry is the only record of what
was built, so running the planner again after a successful run yields no
build candidates.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from mirrorlib import logutil
from mirrorlib.config import ComponentConfig, MirrorConfig, ProjectConfig
from mirrorlib.exceptions import RegistryProbeIndeterminate, UpstreamUnavailable
from mirrorlib.registry import RegistryInspector, TagPresence
from mirrorlib.upstream import VersionSource
from mirrorlib.version import ReleaseRecord, SemanticVersion

logger = logutil.getLogger(__name__)

BuildCandidate = Tuple[SemanticVersion, str]


@dataclass(frozen=True)
class DuplicateVersion:
    """ Two upstream tags normalized to the same version; the later one in fetch order was kept """
    version: SemanticVersion
    kept_tag: str
    dropped_tag: str


@dataclass(frozen=True)
class VersionPlan:
    project: str
    component: str
    image: str
    repository: str
    architectures: Tuple[str, ...]
    window: Tuple[ReleaseRecord, ...]
    latest: Optional[ReleaseRecord]
    build_candidates: Tuple[BuildCandidate, ...]
    # digests already in the registry for versions that are only partially built
    existing_digests: Dict[SemanticVersion, Dict[str, str]] = field(default_factory=dict, hash=False)
    indeterminate: Dict[SemanticVersion, str] = field(default_factory=dict, hash=False)
    duplicates: Tuple[DuplicateVersion, ...] = ()
    upstream_latest: Optional[ReleaseRecord] = None

    @property
    def nothing_to_build(self) -> bool:
        return not self.build_candidates

    @property
    def latest_version(self) -> Optional[SemanticVersion]:
        return self.latest.version if self.latest else None

    @property
    def versions_to_build(self) -> List[SemanticVersion]:
        return list(dict.fromkeys(version for version, _ in self.build_candidates))

    @property
    def up_to_date_versions(self) -> List[SemanticVersion]:
        to_build = set(self.versions_to_build)
        return [r.version for r in self.window if r.version not in to_build and r.version not in self.indeterminate]

    def record_for(self, version: SemanticVersion) -> ReleaseRecord:
        for record in self.window:
            if record.version == version:
                return record
        raise KeyError(f"{version} is not in the window of {self.component}")

    def to_dict(self) -> Dict:
        return {
            'project': self.project,
            'component': self.component,
            'image': self.image,
            'window': [str(r.version) for r in self.window],
            'latest': str(self.latest.version) if self.latest else None,
            'upstream_latest': str(self.upstream_latest.version) if self.upstream_latest else None,
            'build_candidates': [{'version': str(v), 'arch': a} for v, a in self.build_candidates],
            'indeterminate': {str(v): msg for v, msg in self.indeterminate.items()},
            'duplicates': [{'version': str(d.version), 'kept': d.kept_tag, 'dropped': d.dropped_tag} for d in self.duplicates],
        }


def select_window(releases: Iterable[ReleaseRecord], window_size: int) -> Tuple[List[ReleaseRecord], List[DuplicateVersion]]:
    """
    Filters prereleases, deduplicates by version value and keeps the window_size greatest versions, descending.
    The head of the window is the semantic latest.
    """
    if window_size <= 0:
        raise ValueError("window_size must be positive")
    by_version: Dict[SemanticVersion, ReleaseRecord] = {}
    duplicates = []
    for record in releases:
        if record.is_prerelease:
            continue
        previous = by_version.get(record.version)
        if previous is not None and previous.raw_tag != record.raw_tag:
            logger.warning("Upstream tags %s and %s both normalize to %s; keeping %s",
                           previous.raw_tag, record.raw_tag, record.version, record.raw_tag)
            duplicates.append(DuplicateVersion(record.version, kept_tag=record.raw_tag, dropped_tag=previous.raw_tag))
        by_version[record.version] = record
    window = sorted(by_version.values(), key=lambda r: r.version, reverse=True)[:window_size]
    return window, duplicates


def diff_registry(window: Sequence[ReleaseRecord], presence: Dict[str, Union[TagPresence, RegistryProbeIndeterminate]],
                  architectures: Sequence[str]) -> Tuple[List[BuildCandidate], Dict[SemanticVersion, Dict[str, str]], Dict[SemanticVersion, str]]:
    """
    :param presence: tag -> probe outcome for every version of the window
    :return: (build candidates, existing digests of partially built versions, indeterminate versions -> reason)
    """
    candidates: List[BuildCandidate] = []
    existing: Dict[SemanticVersion, Dict[str, str]] = {}
    indeterminate: Dict[SemanticVersion, str] = {}
    for record in window:
        outcome = presence.get(str(record.version))
        if outcome is None:
            indeterminate[record.version] = "registry was not probed"
            continue
        if isinstance(outcome, RegistryProbeIndeterminate):
            # neither rebuild nor skip; the next cycle will probe again
            indeterminate[record.version] = str(outcome)
            continue
        missing = [arch for arch in architectures if not outcome.has_arch(arch)]
        candidates.extend((record.version, arch) for arch in missing)
        if missing and outcome.exists:
            existing[record.version] = {arch: d for arch, d in outcome.digests.items() if arch in architectures and d}
    return candidates, existing, indeterminate


class VersionPlanner:

    def __init__(self, config: MirrorConfig, source: VersionSource, inspector: RegistryInspector):
        self.config = config
        self.source = source
        self.inspector = inspector

    async def resolve_window(self, project: ProjectConfig) -> Tuple[List[ReleaseRecord], List[DuplicateVersion]]:
        """
        :raises UpstreamUnavailable: if upstream releases cannot be listed
        """
        releases = await self.source.list_releases(project)
        return select_window(releases, self.config.window_size)

    async def plan_component(self, project: ProjectConfig, component: ComponentConfig,
                             window: Sequence[ReleaseRecord], duplicates: Sequence[DuplicateVersion] = (),
                             latest: Optional[ReleaseRecord] = None,
                             upstream_latest: Optional[ReleaseRecord] = None) -> VersionPlan:
        repository = self.config.image_repository(component)
        architectures = tuple(self.config.architectures)
        presence = await self.inspector.probe_tags(repository, [str(r.version) for r in window]) if window else {}
        candidates, existing, indeterminate = diff_registry(window, presence, architectures)

        plan = VersionPlan(
            project=project.name,
            component=component.name,
            image=self.config.image_name(component),
            repository=repository,
            architectures=architectures,
            window=tuple(window),
            latest=latest if latest is not None else (window[0] if window else None),
            build_candidates=tuple(candidates),
            existing_digests=existing,
            indeterminate=indeterminate,
            duplicates=tuple(duplicates),
            upstream_latest=upstream_latest,
        )
        if plan.nothing_to_build:
            logger.info("%s: nothing to build (window: %s)", component.name, ', '.join(str(r.version) for r in window) or 'empty')
        else:
            logger.info("%s: %s jobs to build for %s", component.name, len(candidates),
                        ', '.join(str(v) for v in plan.versions_to_build))
        return plan

    async def plan(self, project: ProjectConfig, only_versions: Optional[Iterable[SemanticVersion]] = None) -> List[VersionPlan]:
        """
        Plans every component of the project, in dependency order. All components share the
        project's window and latest.
        """
        window, duplicates = await self.resolve_window(project)
        # latest is decided on the full window, before any version filtering
        latest = window[0] if window else None
        if only_versions is not None:
            wanted = set(only_versions)
            window = [r for r in window if r.version in wanted]
        upstream_latest = None
        try:
            upstream_latest = await self.source.latest_release(project)
        except UpstreamUnavailable as e:  # reporting only; never blocks planning
            logger.debug("%s: could not read upstream's latest release: %s", project.name, e)
        if upstream_latest and latest and upstream_latest.version != latest.version:
            logger.warning("%s: upstream marks %s as latest but the greatest version is %s; tagging %s as latest",
                           project.name, upstream_latest.raw_tag, latest.version, latest.version)
        return [await self.plan_component(project, component, window, duplicates, latest=latest, upstream_latest=upstream_latest)
                for component in project.build_order()]
