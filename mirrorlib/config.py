"""
Loading and validation of the mirror configuration (mirror.yml).

Malformed entries are rejected here, at the boundary, so the rest of the
pipeline only ever sees typed objects.
"""

import io
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from mirrorlib import constants, logutil, util
from mirrorlib.exceptions import MirrorFatalError
from mirrorlib.version import PLAIN_SEMVER_PATTERN, TagPattern

logger = logutil.getLogger(__name__)

PROVIDERS = ('github', 'gitlab')

DEFAULT_CONFIG_YAML = r"""
registry: ghcr.io
namespace: this-is-tobi/mirror
window_size: 10
fetch_size: 30
architectures: [amd64, arm64]
projects:
  mattermost:
    upstream:
      provider: github
      repository: mattermost/mattermost
    tag_pattern: '^(?P<version>\d+\.\d+\.\d+)$'
    components:
      - name: mattermost
        context: ./server/build
        dockerfile: ./server/build/Dockerfile
        build_args:
          MM_PACKAGE: 'https://releases.mattermost.com/${TAG}/mattermost-${TAG}-linux-${ARCH}.tar.gz?src=docker'
        dockerfile_patches:
          # digest pinned base images are single-arch
          - path: ./server/build/Dockerfile
            pattern: '(FROM [^@\s]+)@sha256:[a-f0-9]{64}(.*)'
            replacement: '\1\2'
  mostlymatter:
    upstream:
      provider: gitlab
      url: https://framagit.org
      repository: framasoft/framateam/mostlymatter
    tag_pattern: '^(?P<version>\d+\.\d+\.\d+)-limitless$'
    components:
      - name: mostlymatter
        context: .
        dockerfile: ./Dockerfile
  outline:
    upstream:
      provider: github
      repository: outline/outline
    tag_pattern: '^(?P<version>\d+\.\d+\.\d+)$'
    components:
      - name: base-outline
        context: .
        dockerfile: ./Dockerfile.base
      - name: outline
        context: .
        dockerfile: ./Dockerfile
        depends_on: base-outline
        dockerfile_patches:
          - path: ./Dockerfile
            pattern: 'outlinewiki/outline-base(:\S+)?'
            replacement: '${REGISTRY}/${NAMESPACE}/base-outline:${TAG}'
"""


@dataclass(frozen=True)
class DockerfilePatch:
    path: str
    pattern: str
    replacement: str


@dataclass
class UpstreamConfig:
    repository: str
    provider: str = 'github'
    url: Optional[str] = None

    @property
    def api_url(self) -> str:
        if self.provider == 'github':
            return (self.url or constants.GITHUB_API_URL).rstrip('/')
        return f"{(self.url or 'https://gitlab.com').rstrip('/')}/api/v4"

    @property
    def clone_url(self) -> str:
        if self.provider == 'github':
            return f"https://github.com/{self.repository}.git"
        return f"{(self.url or 'https://gitlab.com').rstrip('/')}/{self.repository}.git"


@dataclass
class ComponentConfig:
    name: str
    image: str
    source_repository: str
    source_ref: str = '${RAW_TAG}'
    context: str = '.'
    dockerfile: str = 'Dockerfile'
    build_args: Dict[str, str] = field(default_factory=dict)
    dockerfile_patches: List[DockerfilePatch] = field(default_factory=list)
    depends_on: Optional[str] = None


@dataclass
class ProjectConfig:
    name: str
    upstream: UpstreamConfig
    tag_pattern: TagPattern
    components: List[ComponentConfig]

    def component(self, name: str) -> ComponentConfig:
        for c in self.components:
            if c.name == name:
                return c
        raise MirrorFatalError(f"Project {self.name} has no component named {name}")

    def build_order(self) -> List[ComponentConfig]:
        """ components sorted so that every component comes after the one it depends on """
        ordered: List[ComponentConfig] = []
        pending = list(self.components)
        while pending:
            ready = [c for c in pending if not c.depends_on or c.depends_on in {o.name for o in ordered}]
            if not ready:
                raise MirrorFatalError(f"Project {self.name} has a dependency cycle between "
                                       f"{', '.join(c.name for c in pending)}")
            for c in ready:
                ordered.append(c)
                pending.remove(c)
        return ordered


@dataclass
class MirrorConfig:
    registry: str = constants.DEFAULT_REGISTRY
    namespace: str = ''
    window_size: int = constants.DEFAULT_WINDOW_SIZE
    fetch_size: int = constants.DEFAULT_FETCH_SIZE
    architectures: List[str] = field(default_factory=lambda: list(constants.KNOWN_ARCHES))
    runners: Dict[str, str] = field(default_factory=lambda: dict(constants.DEFAULT_RUNNERS))
    use_qemu: bool = False
    qemu_runner: str = constants.DEFAULT_QEMU_RUNNER
    max_parallel_builds: int = 4
    max_parallel_probes: int = 8
    projects: Dict[str, ProjectConfig] = field(default_factory=dict)

    def project(self, name: str) -> ProjectConfig:
        if name not in self.projects:
            raise MirrorFatalError(f"Unknown project {name}; configured projects: {', '.join(sorted(self.projects))}")
        return self.projects[name]

    def image_repository(self, component: ComponentConfig) -> str:
        """ repository path within the registry, e.g. this-is-tobi/mirror/outline """
        return f"{self.namespace}/{component.image}" if self.namespace else component.image

    def image_name(self, component: ComponentConfig) -> str:
        return f"{self.registry}/{self.image_repository(component)}"

    def arch_to_runner(self) -> Dict[str, str]:
        if self.use_qemu:
            # emulated builds all run on the same native runner
            return {arch: self.qemu_runner for arch in self.architectures}
        return {arch: self.runners[arch] for arch in self.architectures}

    def template_vars(self) -> Dict[str, str]:
        return {'REGISTRY': self.registry, 'NAMESPACE': self.namespace}


def _require(data: Dict[str, Any], key: str, where: str):
    if key not in data or data[key] in (None, ''):
        raise MirrorFatalError(f"{where}: missing required key '{key}'")
    return data[key]


def _positive_int(value, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise MirrorFatalError(f"{where} must be a positive integer; got {value!r}")
    return value


def _parse_component(project: str, upstream: UpstreamConfig, data: Dict[str, Any]) -> ComponentConfig:
    where = f"projects.{project}.components"
    if not isinstance(data, dict):
        raise MirrorFatalError(f"{where}: expected a mapping; got {data!r}")
    name = _require(data, 'name', where)
    where = f"{where}[{name}]"
    build_args = data.get('build_args') or {}
    if not isinstance(build_args, dict):
        raise MirrorFatalError(f"{where}.build_args must be a mapping")
    patches = []
    for patch in data.get('dockerfile_patches') or []:
        try:
            re.compile(patch['pattern'])
            patches.append(DockerfilePatch(path=patch['path'], pattern=patch['pattern'], replacement=patch.get('replacement', '')))
        except (KeyError, TypeError):
            raise MirrorFatalError(f"{where}.dockerfile_patches entries need 'path' and 'pattern'")
        except re.error as e:
            raise MirrorFatalError(f"{where}.dockerfile_patches: invalid pattern {patch['pattern']!r}: {e}")
    return ComponentConfig(
        name=name,
        image=data.get('image') or name,
        source_repository=data.get('source_repository') or upstream.clone_url,
        source_ref=data.get('source_ref') or '${RAW_TAG}',
        context=data.get('context') or '.',
        dockerfile=data.get('dockerfile') or 'Dockerfile',
        build_args={str(k): str(v) for k, v in build_args.items()},
        dockerfile_patches=patches,
        depends_on=data.get('depends_on'),
    )


def _parse_project(name: str, data: Dict[str, Any]) -> ProjectConfig:
    where = f"projects.{name}"
    if not isinstance(data, dict):
        raise MirrorFatalError(f"{where}: expected a mapping")
    upstream_data = _require(data, 'upstream', where)
    if isinstance(upstream_data, str):
        upstream_data = {'repository': upstream_data}
    upstream = UpstreamConfig(
        repository=_require(upstream_data, 'repository', f"{where}.upstream"),
        provider=upstream_data.get('provider', 'github'),
        url=upstream_data.get('url'),
    )
    if upstream.provider not in PROVIDERS:
        raise MirrorFatalError(f"{where}.upstream.provider must be one of {', '.join(PROVIDERS)}")
    try:
        tag_pattern = TagPattern(data.get('tag_pattern') or PLAIN_SEMVER_PATTERN)
    except re.error as e:
        raise MirrorFatalError(f"{where}.tag_pattern is not a valid regular expression: {e}")
    components_data = data.get('components') or [{'name': name}]
    components = [_parse_component(name, upstream, c) for c in components_data]
    names = [c.name for c in components]
    if len(set(names)) != len(names):
        raise MirrorFatalError(f"{where}: duplicate component names in {names}")
    for c in components:
        if c.depends_on and c.depends_on not in names:
            raise MirrorFatalError(f"{where}.components[{c.name}].depends_on refers to unknown component {c.depends_on}")
    project = ProjectConfig(name=name, upstream=upstream, tag_pattern=tag_pattern, components=components)
    project.build_order()  # raises on cycles
    return project


def parse_config(data: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> MirrorConfig:
    """
    Builds a MirrorConfig from the raw YAML structure. Non-None values in overrides (typically
    CLI options) win over the file.
    """
    data = dict(data or {})
    for k, v in (overrides or {}).items():
        if v is not None and v != ():
            data[k] = v

    cfg = MirrorConfig()
    cfg.registry = data.get('registry') or constants.DEFAULT_REGISTRY
    cfg.namespace = (data.get('namespace') or '').strip('/')
    cfg.window_size = _positive_int(data.get('window_size', constants.DEFAULT_WINDOW_SIZE), 'window_size')
    cfg.fetch_size = _positive_int(data.get('fetch_size', max(constants.DEFAULT_FETCH_SIZE, cfg.window_size)), 'fetch_size')
    if cfg.fetch_size < cfg.window_size:
        raise MirrorFatalError(f"fetch_size ({cfg.fetch_size}) must be at least window_size ({cfg.window_size}); "
                               "filtering only shrinks the candidate set")

    arches = data.get('architectures') or constants.KNOWN_ARCHES
    if isinstance(arches, str):
        arches = [arches]
    try:
        cfg.architectures = list(dict.fromkeys(util.oci_arch(a) for a in util.split_comma_list(arches)))
    except ValueError as e:
        raise MirrorFatalError(f"architectures: {e}")
    if not cfg.architectures:
        raise MirrorFatalError("architectures must not be empty")

    cfg.runners = dict(constants.DEFAULT_RUNNERS)
    cfg.runners.update({util.oci_arch(k): str(v) for k, v in (data.get('runners') or {}).items()})
    cfg.use_qemu = bool(data.get('use_qemu', False))
    cfg.qemu_runner = data.get('qemu_runner') or constants.DEFAULT_QEMU_RUNNER
    if not cfg.use_qemu:
        missing = [a for a in cfg.architectures if not cfg.runners.get(a)]
        if missing:
            raise MirrorFatalError(f"runners: no runner configured for {', '.join(missing)}")
    cfg.max_parallel_builds = _positive_int(data.get('max_parallel_builds', 4), 'max_parallel_builds')
    cfg.max_parallel_probes = _positive_int(data.get('max_parallel_probes', 8), 'max_parallel_probes')

    projects = data.get('projects') or {}
    if not isinstance(projects, dict):
        raise MirrorFatalError("projects must be a mapping of project name to project config")
    cfg.projects = {name: _parse_project(name, p) for name, p in projects.items()}
    return cfg


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> MirrorConfig:
    """
    Loads mirror.yml from path, or the built-in configuration of mirrored applications if no path is given.
    """
    if path:
        if not os.path.isfile(path):
            raise MirrorFatalError(f"Configuration file {path} does not exist")
        logger.debug("Loading configuration from %s", path)
        with io.open(path, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        content = DEFAULT_CONFIG_YAML
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise MirrorFatalError(f"Unable to parse configuration {path or '(built-in)'}: {e}")
    if not isinstance(data, dict):
        raise MirrorFatalError(f"Configuration {path or '(built-in)'} must be a mapping")
    return parse_config(data, overrides)
