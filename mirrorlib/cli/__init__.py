import asyncio
import sys
from functools import update_wrapper

import click
import semver

from mirrorlib import version
from mirrorlib.runtime import Runtime
from mirrorlib.util import split_comma_list
from mirrorlib.version import SemanticVersion

CTX_GLOBAL = None
pass_runtime = click.make_pass_decorator(Runtime)
context_settings = dict(help_option_names=['-h', '--help'])


def print_version(ctx, param, value):
    if not value or ctx.resilient_parsing:
        return
    click.echo('mirror v{}'.format(version()))
    click.echo('Python v{}'.format(sys.version))
    ctx.exit()


# ============================================================================
# GLOBAL OPTIONS: parameters for all commands
# ============================================================================
@click.group(context_settings=context_settings)
@click.option('--version', is_flag=True, callback=print_version,
              expose_value=False, is_eager=True)
@click.option("--config", "config_path", metavar='PATH', default=None, envvar='MIRROR_CONFIG',
              help="mirror.yml describing the mirrored projects (built-in projects by default).\n Env var: MIRROR_CONFIG")
@click.option("--working-dir", metavar='PATH', default=None, envvar='MIRROR_WORKING_DIR',
              help="Existing directory in which file operations should be performed.\n Env var: MIRROR_WORKING_DIR")
@click.option("--registry", metavar='HOST', default=None,
              help="Registry receiving the mirrored images (config provides default).")
@click.option("--namespace", metavar='PATH', default=None,
              help="Namespace under the registry for mirrored images (config provides default).")
@click.option("--window-size", metavar='N', type=click.IntRange(min=1), default=None,
              help="Number of most recent upstream versions to keep mirrored.")
@click.option("-a", "--arches", default=[], metavar='ARCH', multiple=True,
              help="CPU arches to build (config provides default). Can be comma delimited list.")
@click.option("--qemu/--native", "use_qemu", default=None,
              help="--qemu to build every arch by emulation on one runner, --native to use per-arch runners.")
@click.option("--quiet", "-q", default=False, is_flag=True, help="Suppress non-critical output")
@click.option('--debug', default=False, is_flag=True, help='Show debug output on console.')
@click.pass_context
def cli(ctx, **kwargs):
    global CTX_GLOBAL
    kwargs['arches'] = tuple(split_comma_list(kwargs['arches']))
    ctx.obj = Runtime(command=ctx.invoked_subcommand, **kwargs)
    CTX_GLOBAL = ctx
    return ctx


def click_coroutine(f):
    """ A wrapper to allow to use asyncio with click.
    https://github.com/pallets/click/issues/85
    """
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return update_wrapper(wrapper, f)


def validate_semver_major_minor_patch(ctx, param, versions):
    """
    Ensures each incoming value (vX, vX.Y or vX.Y.Z, possibly comma delimited) is a version.
    Missing minor or patch fields are filled in with 0 to meet semver requirements.
    :param ctx: Click context
    :param param: The parameter specified on the command line
    :param versions: The values specified on the command line
    :return: a list of SemanticVersion, or None if no value was given
    """
    if not versions:
        return None

    result = []
    for version in split_comma_list(versions):
        vsplit = version.lstrip('v').split('.')
        if len(vsplit) > 3:
            raise click.BadParameter('Expected X, X.Y, or X.Y.Z (with optional "v" prefix)')
        vsplit.extend(['0'] * (3 - len(vsplit)))
        candidate = '.'.join(vsplit)
        if not semver.Version.is_valid(candidate):
            raise click.BadParameter(f'{version} is not a valid version')
        result.append(SemanticVersion.parse(candidate))
    return result
