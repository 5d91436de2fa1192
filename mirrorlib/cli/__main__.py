import io
import json
import sys
from typing import Dict, List

import click
import yaml

from mirrorlib import cli as cli_package
from mirrorlib import state
from mirrorlib.attestation import AttestationCoordinator
from mirrorlib.builder import read_results, write_result
from mirrorlib.cli import cli, click_coroutine, pass_runtime, validate_semver_major_minor_patch
from mirrorlib.exceptions import IncompleteMergeGroup, MirrorFatalError, UpstreamUnavailable
from mirrorlib.matrix import MatrixExpander, dump_matrix
from mirrorlib.merger import ManifestMerger
from mirrorlib.model import BuildJob
from mirrorlib.planner import VersionPlan, VersionPlanner, select_window
from mirrorlib.reconciler import Reconciler
from mirrorlib.util import green_print, red_print, yellow_print

only_version_option = click.option(
    "--only-version", "only_versions", metavar='X.Y.Z', multiple=True, callback=validate_semver_major_minor_patch,
    help="Only consider these versions of the window. Can be comma delimited list.")


async def _plan_projects(runtime, project_names) -> Dict[str, List[VersionPlan]]:
    """
    Plans the named projects (all by default). A project whose upstream is unavailable is
    recorded in the run state and left out of the result.
    """
    names = list(project_names) or list(runtime.config.projects)
    projects = [runtime.config.project(name) for name in names]
    plans = {}
    async with runtime.http_session() as session:
        planner = VersionPlanner(runtime.config, runtime.version_source(session), runtime.registry_inspector(session))
        for project in projects:
            state.init_project(runtime.state, project.name)
            try:
                plans[project.name] = await planner.plan(project, runtime.only_versions)
            except UpstreamUnavailable as e:
                state.record_project_unavailable(runtime.state, project.name, str(e), logger=runtime.logger)
    return plans


def _check_unavailable(runtime, plans):
    missing = [name for name in runtime.state.get('projects', {}) if name not in plans]
    if missing:
        raise MirrorFatalError(f"Upstream unavailable for: {', '.join(missing)}")


@cli.command("versions:list", short_help="Print the tracked window of upstream versions for a project")
@click.argument("project", metavar="PROJECT", nargs=1)
@pass_runtime
@click_coroutine
async def versions_list(runtime, project):
    """
    Lists the versions currently in PROJECT's window, greatest first, and
    marks the one which receives the "latest" tag.
    """
    runtime.initialize()
    proj = runtime.config.project(project)
    async with runtime.http_session() as session:
        source = runtime.version_source(session)
        try:
            releases = await source.list_releases(proj)
        except UpstreamUnavailable as e:
            raise MirrorFatalError(str(e))
    window, duplicates = select_window(releases, runtime.config.window_size)
    for dup in duplicates:
        yellow_print(f"{dup.dropped_tag} and {dup.kept_tag} are both {dup.version}; using {dup.kept_tag}")
    for i, record in enumerate(window):
        marker = ' (latest)' if i == 0 else ''
        click.echo(f"{record.version}\t{record.raw_tag}{marker}")


@cli.command("plan", short_help="Print, per component, the versions and arches missing from the registry")
@click.option("-p", "--project", "projects", metavar='NAME', multiple=True,
              help="Project to plan (all by default). [multiple]")
@only_version_option
@pass_runtime
@click_coroutine
async def plan(runtime, projects, only_versions):
    runtime.initialize()
    runtime.only_versions = only_versions
    plans = await _plan_projects(runtime, projects)
    doc = {name: [p.to_dict() for p in project_plans] for name, project_plans in plans.items()}
    click.echo(yaml.safe_dump(doc, default_flow_style=False, sort_keys=False))
    _check_unavailable(runtime, plans)


@cli.command("matrix", short_help="Print the build job matrix as JSON for a CI fan-out")
@click.option("-p", "--project", "projects", metavar='NAME', multiple=True,
              help="Project to expand (all by default). [multiple]")
@click.option("-c", "--component", metavar='NAME', default=None,
              help="Only expand jobs of this component.")
@click.option("--output", "-o", metavar='FILE', default=None,
              help="Write the matrix to FILE instead of stdout.")
@only_version_option
@pass_runtime
@click_coroutine
async def matrix(runtime, projects, component, output, only_versions):
    """
    Prints {"include": [...]}, one entry per (component, version, arch)
    job, each carrying its runner and platform.
    """
    runtime.initialize()
    runtime.only_versions = only_versions
    plans = await _plan_projects(runtime, projects)
    expander = MatrixExpander(runtime.config.arch_to_runner(), runtime.config.template_vars())
    jobs = []
    for name, project_plans in plans.items():
        proj = runtime.config.project(name)
        for p in project_plans:
            if component and p.component != component:
                continue
            jobs.extend(expander.expand_plan(p, proj.component(p.component)))
    content = dump_matrix(jobs)
    if output:
        with io.open(output, 'w', encoding='utf-8') as f:
            f.write(content)
        runtime.logger.info("Wrote %s jobs to %s", len(jobs), output)
    else:
        click.echo(content)
    _check_unavailable(runtime, plans)


@cli.command("build", short_help="Build and push one single-arch image by digest")
@click.option("--job", "job_json", metavar='JSON', required=True,
              help="A matrix entry, as JSON.")
@click.option("--results-dir", metavar='DIR', required=True,
              help="Directory receiving the build result file.")
@click.option("--keep-sources", default=False, is_flag=True,
              help="Leave the source checkout in the working directory.")
@pass_runtime
@click_coroutine
async def build(runtime, job_json, results_dir, keep_sources):
    runtime.initialize()
    try:
        job = BuildJob.from_dict(json.loads(job_json))
    except ValueError as e:
        raise MirrorFatalError(f"Invalid build job: {e}")
    builder = runtime.image_builder()
    builder.keep_sources = keep_sources
    result = await builder.build(job)
    path = write_result(results_dir, result)
    runtime.logger.info("Wrote build result to %s", path)
    if not result.succeeded:
        raise MirrorFatalError(result.error)
    green_print(f"{job.image}@{result.digest}")


@cli.command("merge", short_help="Assemble and push multi-arch manifests from build results")
@click.option("-p", "--project", metavar='NAME', required=True, help="Project of the component.")
@click.option("-c", "--component", metavar='NAME', required=True, help="Component whose results are merged.")
@click.option("--results-dir", metavar='DIR', required=True,
              help="Directory containing the build result files.")
@click.option("--dry-run", default=False, is_flag=True, help="Print the manifests without pushing anything.")
@pass_runtime
@click_coroutine
async def merge(runtime, project, component, results_dir, dry_run):
    """
    Groups the build results of COMPONENT by version, then pushes one
    manifest per version whose architectures are all accounted for.
    Versions missing an architecture are reported and never pushed.
    """
    runtime.initialize()
    proj = runtime.config.project(project)
    proj.component(component)
    results = read_results(results_dir, component)
    if not results:
        raise MirrorFatalError(f"No build results for {component} in {results_dir}")

    state.init_project(runtime.state, project)
    runtime.only_versions = sorted({r.job.version for r in results})
    plans = await _plan_projects(runtime, [project])
    _check_unavailable(runtime, plans)
    version_plan = next(p for p in plans[project] if p.component == component)

    wanted = set(version_plan.versions_to_build)
    for result in results:
        if result.job.version not in wanted:
            yellow_print(f"Ignoring result for {result.job.key}: {result.job.version} does not need a build anymore")
    results = [r for r in results if r.job.version in wanted]

    merger = ManifestMerger(dry_run=dry_run)
    for group in merger.group(results, version_plan):
        failures = [r.error for r in results if r.job.version == group.version and not r.succeeded]
        try:
            manifest = merger.plan(group, version_plan.image)
        except IncompleteMergeGroup as e:
            outcome = state.FAILED if failures else state.INCOMPLETE
            state.record_version(runtime.state, project, component, group.version, outcome,
                                 '; '.join(failures) or str(e), missing=list(e.missing_arches), logger=runtime.logger)
            continue
        try:
            digest = await merger.push(manifest)
        except (ChildProcessError, ValueError) as e:
            state.record_version(runtime.state, project, component, group.version, state.FAILED,
                                 f"manifest push failed: {e}", logger=runtime.logger)
            continue
        if dry_run:
            state.record_version(runtime.state, project, component, group.version, state.PLANNED,
                                 tags=list(manifest.tags), digests=dict(manifest.source_digests))
            click.echo(yaml.safe_dump(manifest.to_dict(), default_flow_style=False))
        else:
            state.record_version(runtime.state, project, component, group.version, state.BUILT,
                                 tags=list(manifest.tags), digest=digest)
            green_print(f"{manifest.image}@{digest}")

    state.record_project_finish(runtime.state, project)
    state.record_finish(runtime.state)
    if runtime.state['status'] != state.STATE_PASS:
        red_print(f"Some versions of {component} could not be merged; see {runtime.state_file}")
        sys.exit(1)


@cli.command("attest", short_help="Sign an image and attach its SBOM and provenance")
@click.argument("reference", metavar="IMAGE@DIGEST", nargs=1)
@click.option("--sbom", metavar='FILE', default=None,
              help="SPDX JSON document to attach (produced by syft when omitted).")
@click.option("--provenance", metavar='FILE', required=True,
              help="SLSA provenance predicate to attach.")
@click.option("--key", metavar='KEY', default=None,
              help="cosign key reference (keyless signing by default).")
@click.option("--strict", default=False, is_flag=True,
              help="Exit with an error if any attestation step fails.")
@pass_runtime
@click_coroutine
async def attest(runtime, reference, sbom, provenance, key, strict):
    runtime.initialize()
    if '@sha256:' not in reference:
        raise MirrorFatalError(f"{reference} is not a digest reference; tags are mutable and cannot be attested")
    result = await AttestationCoordinator(key=key).attest(reference, sbom, provenance)
    failure = result.failure(reference)
    runtime.state['attestation'] = {reference: result.to_dict()}
    if not failure:
        green_print(f"Attested {reference}")
    elif strict:
        raise MirrorFatalError(str(failure))
    else:
        yellow_print(str(failure))


@cli.command("reconcile", short_help="Plan, build, merge and attest everything missing from the registry")
@click.option("-p", "--project", "projects", metavar='NAME', multiple=True,
              help="Project to reconcile (all by default). [multiple]")
@only_version_option
@click.option("--dry-run", default=False, is_flag=True,
              help="Plan and report without building or pushing.")
@click.option("--attest/--no-attest", default=True, help="Sign and attest every pushed manifest.")
@click.option("--key", metavar='KEY', default=None,
              help="cosign key reference (keyless signing by default).")
@pass_runtime
@click_coroutine
async def reconcile(runtime, projects, only_versions, dry_run, attest, key):
    """
    The full loop: for every project, diff the upstream window against
    the registry and build only what is missing. Projects and versions
    fail independently; the run state records the outcome of each.
    """
    runtime.initialize()
    config = runtime.config
    for name in projects:
        config.project(name)
    async with runtime.http_session() as session:
        reconciler = Reconciler(
            config,
            VersionPlanner(config, runtime.version_source(session), runtime.registry_inspector(session)),
            runtime.image_builder(),
            ManifestMerger(dry_run=dry_run),
            attestor=AttestationCoordinator(key=key) if attest else None,
            run_state=runtime.state,
            dry_run=dry_run,
        )
        await reconciler.reconcile(projects, only_versions)

    _print_summary(runtime.state)
    if runtime.state['status'] != state.STATE_PASS:
        sys.exit(1)


def _print_summary(run_state: Dict):
    for name, proj in sorted(run_state.get('projects', {}).items()):
        line = f"{name}: {proj['status']} ({proj['success']} ok, {proj['fail']} failed)"
        if proj['status'] == state.STATE_PASS:
            green_print(line)
        else:
            red_print(line + (f" {proj['msg']}" if proj['msg'] and proj['msg'] != 'Complete' else ''))
        for component, versions in sorted(proj['components'].items()):
            for version, entry in versions.items():
                click.echo(f"  {component} {version}: {entry['outcome']}")


def main():
    try:
        cli(obj={})
    except MirrorFatalError as ex:
        # Allow capturing actual tool errors and print them
        # nicely instead of a gross stack-trace.
        # All internal errors that should simply cause the app
        # to exit with an error code should use MirrorFatalError
        red_print('\nmirror failed with error:\n' + str(ex))

        if cli_package.CTX_GLOBAL and cli_package.CTX_GLOBAL.obj:
            cli_package.CTX_GLOBAL.obj.state['status'] = state.STATE_FAIL
            cli_package.CTX_GLOBAL.obj.state['msg'] = str(ex)
        sys.exit(1)
    finally:
        if cli_package.CTX_GLOBAL and cli_package.CTX_GLOBAL.obj and cli_package.CTX_GLOBAL.obj.initialized:
            cli_package.CTX_GLOBAL.obj.save_state()


if __name__ == '__main__':
    main()
