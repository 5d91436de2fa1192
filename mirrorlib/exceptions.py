"""Common tooling exceptions. Store them in this central place to
avoid circular imports
"""

from typing import Dict, Iterable, Optional


class MirrorFatalError(Exception):
    """A broad exception for errors which should stop the tool with a message instead of a stack-trace"""
    pass


class UpstreamUnavailable(Exception):
    """
    The upstream release API could not be queried, even after retries.
    Planning for the affected project must be aborted; other projects proceed.
    """
    def __init__(self, project: str, msg: str):
        super().__init__(f"Upstream releases for {project} are unavailable: {msg}")
        self.project = project


class RegistryProbeIndeterminate(Exception):
    """
    A registry existence probe could not tell whether a tag exists (auth failure,
    network error, unexpected status). Never to be read as "absent".
    """
    def __init__(self, repository: str, tags: Iterable[str], msg: str, status: Optional[int] = None,
                 existing: Iterable[str] = ()):
        self.repository = repository
        self.tags = sorted(tags)
        self.status = status
        # tags proven to exist by the same batched probe
        self.existing = set(existing)
        super().__init__(f"Unable to determine whether {repository}:{','.join(self.tags)} exists: {msg}")


class BuildJobFailed(Exception):
    """The external builder reported a failure for a (version, arch) job"""
    def __init__(self, component: str, version: str, arch: str, msg: str):
        super().__init__(f"Build of {component} {version} for {arch} failed: {msg}")
        self.component = component
        self.version = version
        self.arch = arch


class IncompleteMergeGroup(Exception):
    """A manifest was requested for a version which lacks a digest for at least one planned architecture"""
    def __init__(self, component: str, version: str, missing_arches: Iterable[str]):
        self.component = component
        self.version = version
        self.missing_arches = sorted(missing_arches)
        super().__init__(f"Refusing to merge {component} {version}: "
                         f"missing digests for {', '.join(self.missing_arches)}")


class AttestationPartialFailure(Exception):
    """One or more of sign / SBOM / provenance could not be attached. The image stays published."""
    def __init__(self, image_reference: str, errors: Dict[str, str]):
        self.image_reference = image_reference
        self.errors = dict(errors)
        details = '; '.join(f'{op}: {err}' for op, err in sorted(self.errors.items()))
        super().__init__(f"Attestation incomplete for {image_reference}: {details}")
