"""
Value objects passed between the planning, build and merge stages.

Each stage consumes only these declared inputs; anything read from outside
(CI matrix entries, build result files) goes through from_dict(), which
rejects malformed entries instead of passing loose maps along.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from mirrorlib import constants, util
from mirrorlib.version import SemanticVersion

DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")


def validate_digest(digest: str) -> str:
    if not isinstance(digest, str) or not DIGEST_RE.match(digest.strip()):
        raise ValueError(f"Invalid image digest {digest!r}; expected sha256:<64 hex chars>")
    return digest.strip()


def _required(data: Dict[str, Any], key: str, what: str):
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a mapping; got {type(data).__name__}")
    value = data.get(key)
    if value in (None, ''):
        raise ValueError(f"{what} is missing '{key}'")
    return value


@dataclass(frozen=True)
class BuildJob:
    """ One (version, arch) image build, in the shape expected by the external builder """
    component: str
    version: SemanticVersion
    arch: str
    runner: str
    platform: str
    image: str = ''
    source_repository: str = ''
    source_ref: str = ''
    context: str = '.'
    dockerfile: str = 'Dockerfile'
    build_args: Dict[str, str] = field(default_factory=dict, hash=False)
    dockerfile_patches: Tuple[Tuple[str, str, str], ...] = ()

    def __post_init__(self):
        if self.arch not in constants.KNOWN_ARCHES:
            raise ValueError(f"Unknown architecture {self.arch!r} for {self.component} {self.version}")
        if self.platform != util.platform_for_arch(self.arch):
            raise ValueError(f"Platform {self.platform!r} does not match architecture {self.arch!r}")
        if not self.runner:
            raise ValueError(f"No runner for {self.component} {self.version} {self.arch}")

    @property
    def key(self) -> str:
        return f"{self.component}-{self.version}-{self.arch}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component': self.component,
            'version': str(self.version),
            'arch': self.arch,
            'runner': self.runner,
            'platform': self.platform,
            'image': self.image,
            'source_repository': self.source_repository,
            'source_ref': self.source_ref,
            'context': self.context,
            'dockerfile': self.dockerfile,
            'build_args': dict(self.build_args),
            'dockerfile_patches': [list(p) for p in self.dockerfile_patches],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildJob":
        what = 'build job'
        if not isinstance(data, dict):
            raise ValueError(f"{what} must be a mapping; got {type(data).__name__}")
        patches = data.get('dockerfile_patches') or []
        if any(not isinstance(p, (list, tuple)) or len(p) != 3 for p in patches):
            raise ValueError(f"{what} has malformed dockerfile_patches: {patches!r}")
        build_args = data.get('build_args') or {}
        if not isinstance(build_args, dict):
            raise ValueError(f"{what} build_args must be a mapping")
        return cls(
            component=_required(data, 'component', what),
            version=SemanticVersion.parse(str(_required(data, 'version', what))),
            arch=_required(data, 'arch', what),
            runner=_required(data, 'runner', what),
            platform=_required(data, 'platform', what),
            image=data.get('image') or '',
            source_repository=data.get('source_repository') or '',
            source_ref=data.get('source_ref') or '',
            context=data.get('context') or '.',
            dockerfile=data.get('dockerfile') or 'Dockerfile',
            build_args={str(k): str(v) for k, v in build_args.items()},
            dockerfile_patches=tuple(tuple(p) for p in patches),
        )


@dataclass(frozen=True)
class BuildResult:
    """ The external builder's answer for a job: a digest, or an error """
    job: BuildJob
    digest: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.digest is not None:
            object.__setattr__(self, 'digest', validate_digest(self.digest))
        if (self.digest is None) == (self.error is None):
            raise ValueError(f"A build result for {self.job.key} needs exactly one of digest or error")

    @property
    def succeeded(self) -> bool:
        return self.digest is not None

    def to_dict(self) -> Dict[str, Any]:
        return {'job': self.job.to_dict(), 'digest': self.digest, 'error': self.error}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildResult":
        job = BuildJob.from_dict(_required(data, 'job', 'build result'))
        return cls(job=job, digest=data.get('digest'), error=data.get('error'))


@dataclass(frozen=True)
class MergeGroup:
    """ The per-version collection of single-arch digests awaiting manifest assembly """
    component: str
    version: SemanticVersion
    is_latest: bool
    planned_arches: Tuple[str, ...]
    digests_by_arch: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def missing_arches(self) -> List[str]:
        return [arch for arch in self.planned_arches if arch not in self.digests_by_arch]

    @property
    def is_complete(self) -> bool:
        return bool(self.planned_arches) and not self.missing_arches


@dataclass(frozen=True)
class ManifestPlan:
    """ What to push: one multi-arch manifest under a set of tags """
    component: str
    image: str
    version: SemanticVersion
    tags: Tuple[str, ...]
    source_digests: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def references(self) -> List[str]:
        """ image@digest for every architecture, in a stable order """
        return [f"{self.image}@{self.source_digests[arch]}" for arch in sorted(self.source_digests)]

    @property
    def pullspecs(self) -> List[str]:
        return [f"{self.image}:{tag}" for tag in self.tags]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'component': self.component,
            'image': self.image,
            'version': str(self.version),
            'tags': list(self.tags),
            'digests': dict(self.source_digests),
        }
