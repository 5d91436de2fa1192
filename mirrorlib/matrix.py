"""
MatrixExpander: turns (version, arch) build candidates into a flat list of
build jobs.

The list is deliberately one-dimensional. CI fan-outs only accept one level
of parallel job declarations, and since the runner depends on the
architecture, a cross product of independent version and runner axes would
pair runners with the wrong architecture.
"""

import json
from typing import Dict, Iterable, List, Mapping, Optional

from mirrorlib import logutil, util
from mirrorlib.config import ComponentConfig
from mirrorlib.model import BuildJob
from mirrorlib.planner import BuildCandidate, VersionPlan

logger = logutil.getLogger(__name__)


def expand(build_candidates: Iterable[BuildCandidate], arch_to_runner: Mapping[str, str], component: str) -> List[BuildJob]:
    """
    One BuildJob per candidate, with the runner looked up by architecture and platform linux/{arch}.
    :raises ValueError: if an architecture has no runner
    """
    jobs = []
    for version, arch in build_candidates:
        if arch not in arch_to_runner:
            raise ValueError(f"No runner configured for architecture {arch}")
        jobs.append(BuildJob(component=component, version=version, arch=arch,
                             runner=arch_to_runner[arch], platform=util.platform_for_arch(arch)))
    return jobs


class MatrixExpander:
    """
    Expands plans into fully described build jobs: runner and platform plus everything the external
    builder needs (source ref, Dockerfile, build args), with ${TAG}-style placeholders resolved per job.
    """

    def __init__(self, arch_to_runner: Mapping[str, str], template_vars: Optional[Mapping[str, str]] = None):
        self.arch_to_runner = dict(arch_to_runner)
        self.template_vars = dict(template_vars or {})

    def job_vars(self, plan: VersionPlan, job: BuildJob) -> Dict[str, str]:
        variables = dict(self.template_vars)
        variables.update({
            'TAG': str(job.version),
            'VERSION': str(job.version),
            'RAW_TAG': plan.record_for(job.version).raw_tag,
            'ARCH': job.arch,
            'PLATFORM': job.platform,
            'IMAGE': plan.image,
        })
        return variables

    def expand_plan(self, plan: VersionPlan, component: ComponentConfig) -> List[BuildJob]:
        jobs = []
        for job in expand(plan.build_candidates, self.arch_to_runner, plan.component):
            variables = self.job_vars(plan, job)
            jobs.append(BuildJob(
                component=job.component,
                version=job.version,
                arch=job.arch,
                runner=job.runner,
                platform=job.platform,
                image=plan.image,
                source_repository=component.source_repository,
                source_ref=util.substitute_vars(component.source_ref, variables),
                context=component.context,
                dockerfile=component.dockerfile,
                build_args={k: util.substitute_vars(v, variables) for k, v in component.build_args.items()},
                dockerfile_patches=tuple((p.path, p.pattern, util.substitute_vars(p.replacement, variables))
                                         for p in component.dockerfile_patches),
            ))
        logger.debug("%s: expanded %s build jobs", plan.component, len(jobs))
        return jobs


def to_github_matrix(jobs: Iterable[BuildJob]) -> Dict[str, List[Dict]]:
    """ {"include": [...]} with one entry per job, usable as a CI strategy matrix """
    return {'include': [job.to_dict() for job in jobs]}


def dump_matrix(jobs: Iterable[BuildJob]) -> str:
    return json.dumps(to_github_matrix(jobs), separators=(',', ':'))
